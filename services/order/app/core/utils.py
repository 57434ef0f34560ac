from datetime import datetime, timezone
import secrets, string

_TOKEN_ALPHABET = string.ascii_lowercase + string.digits

def now_utc() -> datetime: return datetime.utcnow()

def unix_millis(dt: datetime) -> int:
    return int(dt.replace(tzinfo=timezone.utc).timestamp() * 1000)

def make_order_number(prefix: str, at: datetime) -> str:
    token = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(9))
    return f"{prefix}-{unix_millis(at)}-{token}"
