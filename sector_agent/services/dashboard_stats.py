from collections import Counter
from typing import Dict, Iterable, List, Sequence

from sector_agent.config.settings import settings
from sector_agent.models.schemas import PENDING_ZONE, UNASSIGNED_ZONE, ResolvedTicket

TO_CLOSE_STATUS = "À clôturer"


def status_counts(records: Iterable[ResolvedTicket]) -> Dict[str, int]:
    """Dashboard tiles: tickets in progress, tickets to close, total."""
    counts = {"en_cours": 0, "a_cloturer": 0, "total": 0}
    for item in records:
        status = item.record.status_text.strip().lower()
        counts["total"] += 1
        if status == settings.default_status.lower():
            counts["en_cours"] += 1
        elif status == TO_CLOSE_STATUS.lower():
            counts["a_cloturer"] += 1
    return counts


def zone_counts(records: Iterable[ResolvedTicket], zone_names: Sequence[str]) -> Dict[str, int]:
    """Tickets per sector zone, in zone index order, followed by 'unassigned' and 'pending'."""
    counter = Counter(item.zone_name for item in records)
    ordered: List[str] = list(zone_names) + [UNASSIGNED_ZONE, PENDING_ZONE]
    return {name: counter.get(name, 0) for name in ordered}


def sector_counts(records: Iterable[ResolvedTicket]) -> Dict[str, int]:
    """Tickets per business sector (CHR, HACCP, ...), sorted by count descending."""
    counter = Counter(str(item.record.data.get("secteur") or item.record.collection) for item in records)
    return dict(counter.most_common())
