import secrets
import string
import uuid

_BASE36 = string.digits + string.ascii_lowercase


def new_id() -> str:
    """Primary keys: opaque uuid4 strings, shared across both services' stores."""
    return str(uuid.uuid4())


def _base36(n: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(n))


# Synthetic gateway identifiers (the gateway itself is simulated)
def generate_plan_id() -> str:
    return f"plan_{_base36(13)}"


def generate_event_id() -> str:
    return f"evt_{uuid.uuid4()}"


def generate_intent_id() -> str:
    return f"pi_{uuid.uuid4()}"


def generate_gateway_payment_id() -> str:
    return f"pay_{_base36(20)}"
