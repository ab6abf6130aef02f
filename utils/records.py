# 📦 utils/records.py
# ─────────────────────────────
# Row <-> model conversion for stored therapists and clients

from schemas.schemas import Client, Therapist


def to_row(entity) -> dict:
    """Flatten a model into a JSON-safe row; the address stays nested."""
    return entity.model_dump(mode="json")


def therapist_from_row(row: dict) -> Therapist:
    row = dict(row)
    row["specializations"] = row.get("specializations") or []
    row["is_paired"] = bool(row.get("is_paired"))
    return Therapist.model_validate(row)


def client_from_row(row: dict) -> Client:
    return Client.model_validate(row)
