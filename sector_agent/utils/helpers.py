import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from sector_agent.models.schemas import ResolvedTicket

logger = logging.getLogger(__name__)

FRENCH_MONTHS = {
    'janvier': 1, 'février': 2, 'mars': 3, 'avril': 4, 'mai': 5, 'juin': 6,
    'juillet': 7, 'août': 8, 'septembre': 9, 'octobre': 10, 'novembre': 11, 'décembre': 12,
}

UNKNOWN_CLIENT = "Client Inconnu"


def parse_french_date(date_string: Optional[str]) -> Optional[date]:
    """
    Parses a French date string like "mardi 8 avril 2025" (the day name is ignored).
    Falls back to ISO formats such as "2025-04-08". Returns None if parsing fails.
    """
    if not date_string or not isinstance(date_string, str):
        return None

    parts = date_string.strip().lower().split()
    if len(parts) >= 3:
        day_str, month_str, year_str = parts[-3], parts[-2], parts[-1]
        month = FRENCH_MONTHS.get(month_str)
        if month is not None and day_str.isdigit() and year_str.isdigit():
            try:
                return date(int(year_str), month, int(day_str))
            except ValueError:
                logger.warning(f"Date components out of range in '{date_string}'")
                return None

    try:
        return datetime.fromisoformat(date_string.strip().replace('Z', '+00:00')).date()
    except ValueError:
        logger.warning(f"Unexpected date format: '{date_string}'")
        return None


def format_date_for_display(value: Optional[date]) -> str:
    """Formats a date as DD/MM/YYYY, or 'N/A'."""
    if value is None:
        return 'N/A'
    return value.strftime('%d/%m/%Y')


def group_by_field(records: Iterable[ResolvedTicket], field: str,
                   unknown_label: str = UNKNOWN_CLIENT) -> Dict[str, List[ResolvedTicket]]:
    """Groups records by a raw document field (e.g. raisonSociale, nomClient); keys come back sorted."""
    groups: Dict[str, List[ResolvedTicket]] = {}
    for item in records:
        key = item.record.data.get(field) or unknown_label
        groups.setdefault(str(key), []).append(item)
    return {key: groups[key] for key in sorted(groups)}


def _contains(value: Any, term: Optional[str]) -> bool:
    if not term:
        return True
    return term.strip().lower() in str(value or "").lower()


def filter_records(records: Iterable[ResolvedTicket], *, status: Optional[str] = None,
                   sector: Optional[str] = None, raison_sociale: Optional[str] = None,
                   code_client: Optional[str] = None, numero_sap: Optional[str] = None) -> List[ResolvedTicket]:
    """Status and sector match exactly (case-insensitive); text filters are substring searches."""
    selected = []
    for item in records:
        record = item.record
        if status and record.status_text.lower() != status.lower():
            continue
        if sector and str(record.data.get("secteur") or record.collection).lower() != sector.lower():
            continue
        if not (_contains(record.data.get("raisonSociale"), raison_sociale)
                and _contains(record.data.get("codeClient"), code_client)
                and _contains(record.data.get("numeroSAP"), numero_sap)):
            continue
        selected.append(item)
    return selected
