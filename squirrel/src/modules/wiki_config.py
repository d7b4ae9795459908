from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.cache import CacheKeys, TTLCache, get_cache, get_config_cache
from squirrel.src.modules.errors import ConfigurationException, ValidationError, ValidationException
from squirrel.src.modules.wiki_db import SiteConfiguration, utc_now

logger = logging.getLogger(__name__)

CONFIG_CACHE_TTL_SECONDS = 60 * 60
CACHE_SETTING_KEYS = ("SQUIRREL_ENABLE_CACHING", "SQUIRREL_CACHE_DURATION_MINUTES")

SOURCE_ENVIRONMENT = "EnvironmentVariable"
SOURCE_DATABASE = "Database"
SOURCE_DEFAULT = "Default"


def _truthy(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    raw = str(value).strip().lower()
    return raw in {"1", "true", "yes", "on"}


def _csv(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip() for part in str(raw).split(",") if part.strip())


@dataclass(frozen=True)
class ValidationRules:
    min_value: int | None = None
    max_value: int | None = None
    allowed_values: tuple[str, ...] = ()
    must_be_url: bool = False
    regex_pattern: str | None = None


@dataclass(frozen=True)
class ConfigurationProperty:
    key: str
    display_name: str
    description: str
    category: str
    value_type: type
    default: Any
    validation: ValidationRules | None = None
    is_secret: bool = False
    requires_restart: bool = False


def _prop(
    key: str,
    display_name: str,
    category: str,
    value_type: type,
    default: Any,
    description: str = "",
    **kwargs: Any,
) -> ConfigurationProperty:
    rules_keys = {"min_value", "max_value", "allowed_values", "must_be_url", "regex_pattern"}
    rules = {k: kwargs.pop(k) for k in list(kwargs) if k in rules_keys}
    return ConfigurationProperty(
        key=key,
        display_name=display_name,
        description=description or display_name,
        category=category,
        value_type=value_type,
        default=default,
        validation=ValidationRules(**rules) if rules else None,
        **kwargs,
    )


DEFAULT_ALLOWED_EXTENSIONS = (
    ".pdf,.doc,.docx,.xls,.xlsx,.ppt,.pptx,.txt,.md,.jpg,.jpeg,.png,.gif,.bmp,.svg,.zip,.rar,.7z"
)

_REGISTRY: dict[str, ConfigurationProperty] = {
    p.key: p
    for p in [
        # General
        _prop("SQUIRREL_SITE_NAME", "Site Name", "General", str, "Squirrel Wiki"),
        _prop("SQUIRREL_SITE_URL", "Site URL", "General", str, "", must_be_url=True),
        _prop(
            "SQUIRREL_DEFAULT_LANGUAGE", "Default Language", "General", str, "en",
            allowed_values=("en", "es", "fr", "de", "it"),
        ),
        _prop("SQUIRREL_TIMEZONE", "Timezone", "General", str, "UTC"),
        # Security
        _prop("SQUIRREL_ADMIN_USERNAME", "Admin Username", "Security", str, "admin", requires_restart=True),
        _prop(
            "SQUIRREL_ADMIN_PASSWORD", "Admin Password", "Security", str, "Squirrel123!",
            is_secret=True, requires_restart=True,
        ),
        _prop("SQUIRREL_ADMIN_EMAIL", "Admin Email", "Security", str, "admin@localhost", requires_restart=True),
        _prop("SQUIRREL_ADMIN_DISPLAYNAME", "Admin Display Name", "Security", str, "Administrator", requires_restart=True),
        _prop("SQUIRREL_ALLOW_ANONYMOUS_READING", "Allow Anonymous Reading", "Security", bool, False),
        _prop(
            "SQUIRREL_SESSION_TIMEOUT_MINUTES", "Session Timeout (minutes)", "Security", int, 480,
            min_value=30, max_value=20160,
        ),
        _prop(
            "SQUIRREL_MAX_LOGIN_ATTEMPTS", "Max Login Attempts", "Security", int, 5,
            min_value=3, max_value=20,
        ),
        _prop(
            "SQUIRREL_ACCOUNT_LOCK_DURATION_MINUTES", "Account Lock Duration (minutes)", "Security", int, 30,
            min_value=5, max_value=1440,
        ),
        # Content
        _prop("SQUIRREL_DEFAULT_PAGE_TEMPLATE", "Default Page Template", "Content", str, ""),
        _prop(
            "SQUIRREL_MAX_PAGE_TITLE_LENGTH", "Max Page Title Length", "Content", int, 200,
            min_value=25, max_value=500,
        ),
        _prop("SQUIRREL_ENABLE_PAGE_VERSIONING", "Enable Page Versioning", "Content", bool, False),
        _prop(
            "SQUIRREL_SEARCH_RESULTS_PER_PAGE", "Search Results Per Page", "Content", int, 20,
            min_value=5, max_value=100,
        ),
        _prop(
            "SQUIRREL_SEARCH_MINIMUM_LENGTH", "Minimum Search Length", "Content", int, 2,
            min_value=1, max_value=10,
        ),
        # Performance
        _prop("SQUIRREL_ENABLE_CACHING", "Enable Caching", "Performance", bool, True),
        _prop(
            "SQUIRREL_CACHE_DURATION_MINUTES", "Cache Duration (minutes)", "Performance", int, 60,
            min_value=1, max_value=1440,
        ),
        _prop("SQUIRREL_ENABLE_RESPONSE_CACHING", "Enable Response Caching", "Performance", bool, True),
        _prop(
            "SQUIRREL_RESPONSE_CACHE_DURATION_MINUTES", "Response Cache Duration (minutes)", "Performance", int, 5,
            min_value=1, max_value=60,
        ),
        _prop(
            "SQUIRREL_CACHE_PROVIDER", "Cache Provider", "Performance", str, "Memory",
            allowed_values=("Memory", "Redis"), requires_restart=True,
        ),
        _prop("SQUIRREL_REDIS_CONFIGURATION", "Redis Configuration", "Performance", str, "", requires_restart=True),
        _prop("SQUIRREL_REDIS_INSTANCE_NAME", "Redis Instance Name", "Performance", str, "", requires_restart=True),
        # Infrastructure
        _prop("SQUIRREL_APP_DATA_PATH", "App Data Path", "Infrastructure", str, "App_Data", requires_restart=True),
        _prop("SQUIRREL_SEED_DATA_FILE_PATH", "Seed Data File", "Infrastructure", str, "", requires_restart=True),
        _prop(
            "SQUIRREL_DATABASE_PROVIDER", "Database Provider", "Infrastructure", str, "SQLite",
            allowed_values=("PostgreSQL", "MySQL", "MariaDB", "SQLServer", "SQLite"), requires_restart=True,
        ),
        _prop(
            "SQUIRREL_DATABASE_CONNECTION_STRING", "Database Connection String", "Infrastructure", str, "",
            is_secret=True, requires_restart=True,
        ),
        _prop("SQUIRREL_DATABASE_AUTO_MIGRATE", "Auto Migrate Database", "Infrastructure", bool, True, requires_restart=True),
        _prop("SQUIRREL_DATABASE_SEED_DATA", "Seed Default Data", "Infrastructure", bool, True, requires_restart=True),
        _prop("SQUIRREL_FILE_STORAGE_PATH", "File Storage Path", "Infrastructure", str, "App_Data/Files", requires_restart=True),
        _prop(
            "SQUIRREL_FILE_MAX_SIZE_MB", "Max File Size (MB)", "Infrastructure", int, 100,
            min_value=1, max_value=2048,
        ),
        _prop("SQUIRREL_FILE_ALLOWED_EXTENSIONS", "Allowed File Extensions", "Infrastructure", str, DEFAULT_ALLOWED_EXTENSIONS),
    ]
}


def get_metadata(key: str) -> ConfigurationProperty:
    meta = _REGISTRY.get(key)
    if meta is None:
        raise ConfigurationException(f"Unknown configuration key '{key}'", key)
    return meta


def get_all_metadata() -> list[ConfigurationProperty]:
    return list(_REGISTRY.values())


def convert_value(raw: Any, value_type: type, key: str = "") -> Any:
    if raw is None:
        return None
    if value_type is bool:
        if isinstance(raw, bool):
            return raw
        return _truthy(str(raw))
    if value_type is int:
        if isinstance(raw, bool):
            return int(raw)
        try:
            return int(str(raw).strip())
        except ValueError as exc:
            raise ConfigurationException(f"Configuration '{key}' expects an integer, got '{raw}'", key) from exc
    return str(raw)


@dataclass
class ConfigurationValue:
    key: str
    value: Any
    source: str


class EnvironmentVariableProvider:
    name = "EnvironmentVariable"
    priority = 100
    source = SOURCE_ENVIRONMENT

    async def get_value(self, key: str) -> ConfigurationValue | None:
        raw = os.environ.get(key)
        if raw is None or raw == "":
            return None
        return ConfigurationValue(key=key, value=raw, source=self.source)

    async def can_set(self, key: str) -> bool:
        return False


class DatabaseConfigurationProvider:
    name = "Database"
    priority = 50
    source = SOURCE_DATABASE

    def __init__(self, session: AsyncSession | None):
        self.session = session

    async def get_value(self, key: str) -> ConfigurationValue | None:
        if self.session is None:
            return None
        row = (
            await self.session.execute(select(SiteConfiguration).where(SiteConfiguration.key == key))
        ).scalars().first()
        if row is None:
            return None
        return ConfigurationValue(key=key, value=row.value, source=self.source)

    async def can_set(self, key: str) -> bool:
        return self.session is not None

    async def set_value(self, key: str, value: Any, modified_by: str) -> None:
        if self.session is None:
            raise ConfigurationException(f"No database session available to store configuration '{key}'", key)
        text = str(value).lower() if isinstance(value, bool) else str(value)
        row = (
            await self.session.execute(select(SiteConfiguration).where(SiteConfiguration.key == key))
        ).scalars().first()
        if row is None:
            row = SiteConfiguration(key=key, value=text, modified_by=modified_by, modified_on=utc_now())
            self.session.add(row)
        else:
            row.value = text
            row.modified_by = modified_by
            row.modified_on = utc_now()
        await self.session.commit()


class DefaultConfigurationProvider:
    name = "Default"
    priority = 0
    source = SOURCE_DEFAULT

    async def get_value(self, key: str) -> ConfigurationValue | None:
        meta = _REGISTRY.get(key)
        if meta is None:
            return None
        return ConfigurationValue(key=key, value=meta.default, source=self.source)

    async def can_set(self, key: str) -> bool:
        return False


@dataclass
class ConfigurationEntry:
    key: str
    display_name: str
    description: str
    category: str
    value: Any
    source: str
    is_secret: bool
    requires_restart: bool
    is_read_only: bool


class ConfigurationService:
    """Resolves site settings through environment > database > default providers."""

    def __init__(self, session: AsyncSession | None = None, cache: TTLCache | None = None):
        self.session = session
        self.cache = cache or get_config_cache()
        self.providers = sorted(
            [
                EnvironmentVariableProvider(),
                DatabaseConfigurationProvider(session),
                DefaultConfigurationProvider(),
            ],
            key=lambda p: p.priority,
            reverse=True,
        )

    async def _resolve(self, key: str) -> ConfigurationValue:
        cache_key = CacheKeys.config(key)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached
        meta = get_metadata(key)
        resolved: ConfigurationValue | None = None
        for provider in self.providers:
            value = await provider.get_value(key)
            if value is not None:
                resolved = value
                break
        if resolved is None:
            resolved = ConfigurationValue(key=key, value=meta.default, source=SOURCE_DEFAULT)
        typed = ConfigurationValue(key=key, value=convert_value(resolved.value, meta.value_type, key), source=resolved.source)
        self.cache.set(cache_key, typed, CONFIG_CACHE_TTL_SECONDS)
        return typed

    async def get_value(self, key: str) -> Any:
        return (await self._resolve(key)).value

    async def get_source(self, key: str) -> str:
        return (await self._resolve(key)).source

    async def is_from_environment(self, key: str) -> bool:
        return await self.get_source(key) == SOURCE_ENVIRONMENT

    def validate(self, key: str, value: Any) -> list[str]:
        meta = get_metadata(key)
        rules = meta.validation
        if rules is None:
            return []
        errors: list[str] = []
        text = "" if value is None else str(value)
        if rules.min_value is not None or rules.max_value is not None:
            try:
                number = int(text)
            except ValueError:
                errors.append(f"{meta.display_name} must be a number")
            else:
                if rules.min_value is not None and number < rules.min_value:
                    errors.append(f"{meta.display_name} must be at least {rules.min_value}")
                if rules.max_value is not None and number > rules.max_value:
                    errors.append(f"{meta.display_name} must be at most {rules.max_value}")
        if rules.allowed_values:
            allowed = {v.lower() for v in rules.allowed_values}
            if text.lower() not in allowed:
                errors.append(f"{meta.display_name} must be one of: {', '.join(rules.allowed_values)}")
        if rules.must_be_url and text:
            parsed = urlparse(text)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                errors.append(f"{meta.display_name} must be a valid HTTP/HTTPS URL")
        if rules.regex_pattern and text and not re.search(rules.regex_pattern, text):
            errors.append(f"{meta.display_name} does not match the required pattern")
        return errors

    async def set_value(self, key: str, value: Any, modified_by: str = "system") -> None:
        get_metadata(key)
        if await self.is_from_environment(key):
            raise ConfigurationException(
                f"Cannot modify configuration '{key}' because it is set via environment variable. "
                "To change this setting, update the environment variable and restart the application.",
                key,
                "CONFIGURATION_READ_ONLY",
            )
        errors = self.validate(key, value)
        if errors:
            raise ValidationException([ValidationError(field=key, message=msg) for msg in errors])
        writable = None
        for provider in self.providers:
            if await provider.can_set(key):
                writable = provider
                break
        if writable is None:
            raise ConfigurationException(f"No writable configuration provider available for key '{key}'", key)
        await writable.set_value(key, value, modified_by)
        self.invalidate_cache(key)
        logger.info("Configuration %s updated by %s", key, modified_by)
        if key in CACHE_SETTING_KEYS:
            await self.apply_cache_settings()

    async def apply_cache_settings(self, cache: TTLCache | None = None) -> TTLCache:
        """Push SQUIRREL_ENABLE_CACHING and SQUIRREL_CACHE_DURATION_MINUTES onto the shared cache."""
        cache = cache or get_cache()
        enabled = await self.get_value("SQUIRREL_ENABLE_CACHING")
        minutes = await self.get_value("SQUIRREL_CACHE_DURATION_MINUTES")
        cache.configure(enabled=bool(enabled), default_ttl=minutes * 60)
        return cache

    def invalidate_cache(self, key: str | None = None) -> None:
        if key is None:
            self.cache.remove_by_pattern("config:*")
        else:
            self.cache.remove(CacheKeys.config(key))

    def get_all_metadata(self) -> list[ConfigurationProperty]:
        return get_all_metadata()

    async def get_all_values(self) -> list[ConfigurationEntry]:
        entries: list[ConfigurationEntry] = []
        for meta in get_all_metadata():
            resolved = await self._resolve(meta.key)
            value = resolved.value
            if meta.is_secret and value:
                value = "********"
            entries.append(
                ConfigurationEntry(
                    key=meta.key,
                    display_name=meta.display_name,
                    description=meta.description,
                    category=meta.category,
                    value=value,
                    source=resolved.source,
                    is_secret=meta.is_secret,
                    requires_restart=meta.requires_restart,
                    is_read_only=resolved.source == SOURCE_ENVIRONMENT,
                )
            )
        return entries


@dataclass(frozen=True)
class WikiEnvValidation:
    errors: tuple[str, ...]
    warnings: tuple[str, ...] = field(default_factory=tuple)


def validate_wiki_environment() -> WikiEnvValidation:
    """Check SQUIRREL_* environment overrides against the registry rules."""
    service = ConfigurationService(session=None, cache=TTLCache(enabled=False))
    errors: list[str] = []
    warnings: list[str] = []
    for meta in get_all_metadata():
        raw = os.environ.get(meta.key)
        if raw is None or raw == "":
            continue
        messages = service.validate(meta.key, raw)
        for message in messages:
            errors.append(f"{meta.key}: {message}")
        if meta.value_type is int and not messages:
            try:
                int(raw)
            except ValueError:
                errors.append(f"{meta.key}: expected an integer")
    if not os.environ.get("SQUIRREL_SECRET_KEY"):
        warnings.append("SQUIRREL_SECRET_KEY is not set; plugin secrets use a development key.")
    if os.environ.get("SQUIRREL_ADMIN_PASSWORD") is None:
        warnings.append("SQUIRREL_ADMIN_PASSWORD is not set; the default admin password is in use.")
    for ext in _csv(os.environ.get("SQUIRREL_FILE_ALLOWED_EXTENSIONS")):
        if not ext.startswith("."):
            warnings.append(f"SQUIRREL_FILE_ALLOWED_EXTENSIONS entry '{ext}' should start with a dot.")
    return WikiEnvValidation(errors=tuple(errors), warnings=tuple(warnings))


def strict_startup() -> bool:
    return _truthy(os.environ.get("SQUIRREL_STRICT_STARTUP"), default=False)


def parse_extensions(raw: str) -> set[str]:
    out: set[str] = set()
    for ext in _csv(raw):
        clean = ext.lower()
        out.add(clean if clean.startswith(".") else f".{clean}")
    return out


def format_timestamp(value: datetime | None) -> str:
    return value.isoformat() if value else ""
