"""ULID primary keys: sortable by creation time, safe to generate client-side."""

import ulid


def generate_ulid() -> str:
    return str(ulid.ULID())
