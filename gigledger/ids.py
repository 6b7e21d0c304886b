"""ID generation utilities."""

from nanoid import generate

ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
ID_LENGTH = 12


def gen_id(prefix: str) -> str:
    return f"{prefix}{generate(ALPHABET, ID_LENGTH)}"


def task_id() -> str:
    return gen_id("tk_")


def transaction_id() -> str:
    return gen_id("wt_")


def outbox_id() -> str:
    return gen_id("ob_")


def alert_id() -> str:
    return gen_id("al_")


def escrow_id() -> str:
    return gen_id("es_")


def idempotency_token(task_id: str, operation: str) -> str:
    """Deterministic processor idempotency token for one operation on one task."""
    return f"{task_id}:{operation}"
