import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

CONFIG_ENV_KEY = "CONFIG_PATH"
DEFAULT_CONFIG_PATH = "config.yml"

CATEGORY_NAME_RE = re.compile(r"^[a-z0-9-]+$")
VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(frozen=True)
class BucketDefinition:
    role_id: int
    label: str
    lead_role_id: Optional[int] = None


@dataclass(frozen=True)
class CategoryDefinition:
    name: str
    channel_id: int
    lead_role_id: int
    buckets: tuple[BucketDefinition, ...]

    @property
    def bucket_lead_role_ids(self) -> list[int]:
        return [b.lead_role_id for b in self.buckets if b.lead_role_id]

    def bucket_lead_for(self, bucket_role_id: int) -> Optional[int]:
        for bucket in self.buckets:
            if bucket.role_id == bucket_role_id:
                return bucket.lead_role_id
        return None


@dataclass
class TimingConfig:
    pending_timeout_seconds: float = 300.0
    in_flight_ttl_seconds: float = 30.0
    reconcile_interval_seconds: float = 6 * 60 * 60
    reconcile_max_runtime_seconds: float = 10 * 60
    sweep_delay_seconds: float = 1.0
    prompt_ttl_seconds: float = 300.0
    refresh_min_delay_seconds: float = 2.0
    refresh_max_delay_seconds: float = 5.0
    role_update_delay_seconds: float = 2.0
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0


@dataclass
class HealthConfig:
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class BotConfig:
    token: str
    log_level: str
    guild_id: int
    categories: List[CategoryDefinition]
    name_database_path: str = "names.db"
    open_review_channel_id: Optional[int] = None
    notifications_channel_id: Optional[int] = None
    admin_user_id: Optional[int] = None
    name_setup_hint: str = "You need to set your in-game name first with /setname."
    guild_roles: Dict[int, str] = field(default_factory=dict)
    filter_role_ids: List[int] = field(default_factory=list)
    master_lead_role_id: Optional[int] = None
    timing: TimingConfig = field(default_factory=TimingConfig)
    health: HealthConfig = field(default_factory=HealthConfig)


def _optional_id(data: dict, key: str) -> Optional[int]:
    value = data.get(key)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Config '{key}' must be a numeric id, got {value!r}")


def _required_id(data: dict, key: str, where: str = "config") -> int:
    value = _optional_id(data, key)
    if value is None:
        raise ValueError(f"{where} missing '{key}'")
    return value


def _parse_categories(raw: Any) -> List[CategoryDefinition]:
    if not isinstance(raw, list) or not raw:
        raise ValueError("Config missing 'categories'")
    categories: List[CategoryDefinition] = []
    seen_names: set[str] = set()
    seen_bucket_roles: set[int] = set()
    for entry in raw:
        name = str(entry.get("name") or "").strip()
        if not CATEGORY_NAME_RE.match(name):
            raise ValueError(
                f"Invalid category name '{name}'. Use lowercase letters, digits and '-'"
            )
        if name in seen_names:
            raise ValueError(f"Duplicate category '{name}'")
        seen_names.add(name)
        where = f"Category '{name}'"
        buckets = []
        for bucket in entry.get("buckets") or []:
            role_id = _required_id(bucket, "role_id", f"{where} bucket")
            if role_id in seen_bucket_roles:
                raise ValueError(f"Bucket role {role_id} is configured twice")
            seen_bucket_roles.add(role_id)
            buckets.append(
                BucketDefinition(
                    role_id=role_id,
                    label=str(bucket.get("label") or role_id),
                    lead_role_id=_optional_id(bucket, "lead_role_id"),
                )
            )
        if not buckets:
            raise ValueError(f"{where} has no buckets")
        categories.append(
            CategoryDefinition(
                name=name,
                channel_id=_required_id(entry, "channel_id", where),
                lead_role_id=_required_id(entry, "lead_role_id", where),
                buckets=tuple(buckets),
            )
        )
    return categories


def _parse_timing(raw: dict) -> TimingConfig:
    timing = TimingConfig()
    for key, value in (raw or {}).items():
        if not hasattr(timing, key):
            raise ValueError(f"Unknown timing setting '{key}'")
        default = getattr(timing, key)
        try:
            coerced = type(default)(value)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid value for timing.{key}: {value!r}")
        if coerced < 0:
            raise ValueError(f"timing.{key} must not be negative")
        setattr(timing, key, coerced)
    if timing.retry_attempts < 1:
        raise ValueError("timing.retry_attempts must be at least 1")
    if timing.refresh_max_delay_seconds < timing.refresh_min_delay_seconds:
        raise ValueError(
            "timing.refresh_max_delay_seconds must be >= refresh_min_delay_seconds"
        )
    return timing


def load_config(path: str | None = None) -> BotConfig:
    config_path = path or os.environ.get(CONFIG_ENV_KEY, DEFAULT_CONFIG_PATH)
    with open(config_path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    token = str(data.get("token") or "").strip()
    if not token:
        raise ValueError("Config missing 'token'")

    log_level = str(data.get("log_level") or "INFO").upper()
    if log_level not in VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid log_level '{log_level}'. Must be one of {sorted(VALID_LOG_LEVELS)}"
        )

    guild_roles = {
        int(role_id): str(name)
        for role_id, name in (data.get("guild_roles") or {}).items()
    }
    filter_role_ids = [int(rid) for rid in data.get("filter_role_ids") or []]

    health_raw = data.get("health") or {}
    health = HealthConfig(
        enabled=bool(health_raw.get("enabled", False)),
        host=str(health_raw.get("host") or "0.0.0.0"),
        port=int(health_raw.get("port") or 8080),
    )

    name_database_path = str(data.get("name_database_path") or "names.db")

    return BotConfig(
        token=token,
        log_level=log_level,
        guild_id=_required_id(data, "guild_id"),
        categories=_parse_categories(data.get("categories")),
        name_database_path=name_database_path,
        open_review_channel_id=_optional_id(data, "open_review_channel_id"),
        notifications_channel_id=_optional_id(data, "notifications_channel_id"),
        admin_user_id=_optional_id(data, "admin_user_id"),
        name_setup_hint=str(
            data.get("name_setup_hint")
            or "You need to set your in-game name first with /setname."
        ),
        guild_roles=guild_roles,
        filter_role_ids=filter_role_ids,
        master_lead_role_id=_optional_id(data, "master_lead_role_id"),
        timing=_parse_timing(data.get("timing") or {}),
        health=health,
    )
