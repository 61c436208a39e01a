"""Party identifiers.

Parties are ledger addresses. Checksummed and lowercase hex name the same
account, so ids are compared and stored in one canonical form.
"""


def normalize_party(party_id: str) -> str:
    """Canonical form of a party address."""
    return party_id.strip().lower()


def same_party(a: str, b: str) -> bool:
    return normalize_party(a) == normalize_party(b)
