import os

DEFAULT_CACHE_TTL = {
    "accounts": 30 * 60,
    "categories": 30 * 60,
    "category_groups": 30 * 60,
    "payees": 60 * 60,
    "transactions": 5 * 60,
    "dashboard": 2 * 60,
    "api_cache": 5 * 60,
}

DEFAULTS = {
    "API_BASE_URL": "http://127.0.0.1:5000",
    "LOCAL_DATABASE": os.path.join("instance", "budget_offline.sqlite"),
    "POLL_INTERVAL": 5.0,
    "MAX_SYNC_RETRIES": 3,
    "REQUEST_TIMEOUT": 10.0,
}

ENV_OVERRIDES = {
    "API_BASE_URL": ("BUDGET_API_URL", str),
    "LOCAL_DATABASE": ("BUDGET_OFFLINE_DB", str),
    "POLL_INTERVAL": ("BUDGET_POLL_INTERVAL", float),
    "MAX_SYNC_RETRIES": ("BUDGET_MAX_SYNC_RETRIES", int),
    "REQUEST_TIMEOUT": ("BUDGET_REQUEST_TIMEOUT", float),
}


def load_config(overrides=None, environ=None):
    """Build the client configuration: defaults, then environment, then ``overrides``."""
    environ = os.environ if environ is None else environ
    config = dict(DEFAULTS)
    config["CACHE_TTL"] = dict(DEFAULT_CACHE_TTL)

    for key, (env_name, cast) in ENV_OVERRIDES.items():
        raw = (environ.get(env_name) or "").strip()
        if not raw:
            continue
        try:
            config[key] = cast(raw)
        except ValueError as exc:
            raise ValueError(f"Invalid value for {env_name}: {raw!r}") from exc

    if overrides:
        overrides = dict(overrides)
        ttl_overrides = overrides.pop("CACHE_TTL", None)
        config.update(overrides)
        if ttl_overrides:
            config["CACHE_TTL"].update(ttl_overrides)

    if int(config["MAX_SYNC_RETRIES"]) < 1:
        raise ValueError("MAX_SYNC_RETRIES must be at least 1")
    return config
