from sector_agent.models.schemas import PENDING_ZONE, UNASSIGNED_ZONE, ResolvedTicket, TicketRecord
from sector_agent.services import dashboard_stats


def make(doc_id, status, zone, collection="CHR"):
    return ResolvedTicket(record=TicketRecord(id=doc_id, collection=collection, status_text=status), zone_name=zone)


RECORDS = [
    make("1", "en cours", "Paris Centre"),
    make("2", "En cours", "Marseille", collection="Tabac"),
    make("3", "À clôturer", UNASSIGNED_ZONE),
    make("4", "Terminée", PENDING_ZONE, collection="Tabac"),
    make("5", "Demande de RMA", "Paris Centre", collection="HACCP"),
]


def test_status_counts():
    assert dashboard_stats.status_counts(RECORDS) == {"en_cours": 2, "a_cloturer": 1, "total": 5}


def test_zone_counts_follow_zone_order():
    counts = dashboard_stats.zone_counts(RECORDS, ["Paris Centre", "Lyon Métropole", "Marseille"])

    assert list(counts) == ["Paris Centre", "Lyon Métropole", "Marseille", UNASSIGNED_ZONE, PENDING_ZONE]
    assert counts == {"Paris Centre": 2, "Lyon Métropole": 0, "Marseille": 1, UNASSIGNED_ZONE: 1, PENDING_ZONE: 1}


def test_sector_counts():
    assert dashboard_stats.sector_counts(RECORDS) == {"CHR": 2, "Tabac": 2, "HACCP": 1}
