import os

DEFAULT_CONFIG = {
    "backoff_base": "30",
    "backoff_mode": "linear",
    "max_attempts_default": "5",
    "batch_size": "20",
    "concurrency": "5",
    "poll_interval": "2",
    "item_concurrency": "4",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

BACKOFF_MODES = ("linear", "exponential")

# Keys whose values must parse as positive numbers
NUMERIC_CONFIG_KEYS = ALLOWED_CONFIG_KEYS - {"backoff_mode"}


def db_path() -> str:
    return os.environ.get("ORDERCTL_DB", "orders.db")


def remote_settings() -> dict:
    """Connection settings for the remote order system, read from the environment."""
    return {
        "base_url": os.environ.get("REMOTE_BASE_URL", ""),
        "token": os.environ.get("REMOTE_API_TOKEN", ""),
        "store_code": os.environ.get("REMOTE_STORE_CODE", "default"),
        "shipping_method": os.environ.get("REMOTE_SHIPPING_METHOD", "freeshipping"),
        "payment_method": os.environ.get("REMOTE_PAYMENT_METHOD", "cashondelivery"),
        "stock_id": int(os.environ.get("REMOTE_STOCK_ID", "1")),
    }


def validate_config_value(key: str, value: str) -> str:
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    value = str(value).strip()
    if key == "backoff_mode":
        if value not in BACKOFF_MODES:
            raise ValueError(f"backoff_mode must be one of: {', '.join(BACKOFF_MODES)}")
        return value
    try:
        number = float(value)
    except ValueError:
        raise ValueError(f"{key} must be a number.")
    if number <= 0:
        raise ValueError(f"{key} must be > 0")
    return value
