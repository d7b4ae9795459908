"""Contracts shared by the plugin host and every bundled or third-party plugin."""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

if TYPE_CHECKING:
    from squirrel.src.modules.search_contracts import SearchStrategy

logger = logging.getLogger(__name__)


class PluginType(str, Enum):
    AUTHENTICATION = "Authentication"
    MARKDOWN_EXTENSION = "MarkdownExtension"
    STORAGE_PROVIDER = "StorageProvider"
    SEARCH_PROVIDER = "SearchProvider"
    NOTIFICATION_PROVIDER = "NotificationProvider"
    THEME = "Theme"
    WIDGET = "Widget"


class ConfigType(str, Enum):
    TEXT = "Text"
    URL = "Url"
    SECRET = "Secret"
    BOOLEAN = "Boolean"
    NUMBER = "Number"
    DROPDOWN = "Dropdown"
    TEXT_AREA = "TextArea"


@dataclass
class PluginConfigurationItem:
    key: str
    display_name: str
    description: str = ""
    type: ConfigType = ConfigType.TEXT
    is_required: bool = False
    is_secret: bool = False
    default_value: str | None = None
    validation_pattern: str | None = None
    validation_error_message: str | None = None
    options: list[str] = field(default_factory=list)
    display_order: int = 0
    environment_variable: str | None = None


@dataclass
class PluginMetadata:
    id: str
    name: str
    description: str
    version: str
    author: str
    type: PluginType
    dependencies: list[str] = field(default_factory=list)
    requires_configuration: bool = False
    is_core: bool = False
    configuration: list[PluginConfigurationItem] = field(default_factory=list)


@dataclass
class PluginValidationResult:
    is_valid: bool = True
    errors: dict[str, str] = field(default_factory=dict)

    def add_error(self, key: str, message: str) -> None:
        self.is_valid = False
        self.errors[key] = message


@dataclass
class PluginAction:
    id: str
    name: str
    description: str = ""
    requires_confirmation: bool = False


@dataclass
class PluginActionResult:
    success: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def successful(cls, message: str, **data: Any) -> "PluginActionResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def failed(cls, message: str, **data: Any) -> "PluginActionResult":
        return cls(success=False, message=message, data=data)


class PluginBase(ABC):
    """Default behaviour for plugins: config storage, schema validation, typed getters."""

    def __init__(self) -> None:
        self._configuration: dict[str, str] = {}
        self.is_initialized = False

    @property
    @abstractmethod
    def metadata(self) -> PluginMetadata:
        raise NotImplementedError

    def get_configuration_schema(self) -> list[PluginConfigurationItem]:
        return sorted(self.metadata.configuration, key=lambda item: item.display_order)

    def set_configuration(self, configuration: dict[str, str]) -> None:
        self._configuration = dict(configuration or {})

    @property
    def configuration(self) -> dict[str, str]:
        return dict(self._configuration)

    def get_config_value(self, key: str, default: str | None = None) -> str | None:
        value = self._configuration.get(key)
        if value not in (None, ""):
            return value
        for item in self.metadata.configuration:
            if item.key == key and item.default_value is not None:
                return item.default_value
        return default

    def get_config_bool(self, key: str, default: bool = False) -> bool:
        raw = self.get_config_value(key)
        if raw is None:
            return default
        return str(raw).strip().lower() in {"1", "true", "yes", "on"}

    def get_config_int(self, key: str, default: int = 0) -> int:
        raw = self.get_config_value(key)
        try:
            return int(str(raw).strip()) if raw is not None else default
        except ValueError:
            return default

    def validate_configuration(self, config: dict[str, str]) -> PluginValidationResult:
        result = PluginValidationResult()
        for item in self.get_configuration_schema():
            value = config.get(item.key)
            if item.is_required and (value is None or str(value).strip() == ""):
                result.add_error(item.key, f"{item.display_name} is required")
                continue
            if value is None or str(value) == "":
                continue
            if item.validation_pattern and not re.match(item.validation_pattern, str(value)):
                result.add_error(
                    item.key,
                    item.validation_error_message or f"{item.display_name} has an invalid format",
                )
                continue
            if item.type == ConfigType.URL:
                parsed = urlparse(str(value))
                if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                    result.add_error(item.key, f"{item.display_name} must be a valid URL")
            elif item.type == ConfigType.NUMBER:
                try:
                    int(str(value))
                except ValueError:
                    result.add_error(item.key, f"{item.display_name} must be a number")
            elif item.type == ConfigType.BOOLEAN:
                if str(value).strip().lower() not in {"true", "false"}:
                    result.add_error(item.key, f"{item.display_name} must be true or false")
            elif item.type == ConfigType.DROPDOWN and item.options and str(value) not in item.options:
                result.add_error(item.key, f"{item.display_name} must be one of: {', '.join(item.options)}")
        return result

    async def initialize(self) -> None:
        self.is_initialized = True
        logger.debug("Plugin %s initialized", self.metadata.id)

    async def shutdown(self) -> None:
        self.is_initialized = False
        logger.debug("Plugin %s shut down", self.metadata.id)

    def get_actions(self) -> list[PluginAction]:
        return []

    async def execute_action(self, action_id: str, parameters: dict[str, Any] | None = None) -> PluginActionResult:
        return PluginActionResult.failed(f"Action '{action_id}' is not supported")


class MarkdownExtensionPlugin(PluginBase):
    def pre_process_markdown(self, markdown_text: str) -> str:
        return markdown_text

    def post_process_html(self, html: str) -> str:
        return html


@dataclass
class AuthenticationRequest:
    username: str | None = None
    password: str | None = None
    code: str | None = None
    redirect_uri: str | None = None
    state: str | None = None


@dataclass
class AuthenticationResult:
    success: bool
    username: str | None = None
    email: str | None = None
    display_name: str | None = None
    external_id: str | None = None
    provider: str = "Local"
    failure_reason: str | None = None
    error_message: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failed(cls, reason: str, message: str, provider: str = "Local") -> "AuthenticationResult":
        return cls(success=False, failure_reason=reason, error_message=message, provider=provider)


class AuthenticationFailureReason:
    INVALID_CREDENTIALS = "InvalidCredentials"
    ACCOUNT_LOCKED = "AccountLocked"
    ACCOUNT_INACTIVE = "AccountInactive"
    ACCOUNT_NOT_FOUND = "AccountNotFound"
    PASSWORD_EXPIRED = "PasswordExpired"
    EXTERNAL_PROVIDER_ERROR = "ExternalProviderError"
    TOO_MANY_ATTEMPTS = "TooManyAttempts"


class AuthenticationStrategy(ABC):
    provider: str = "Local"

    @abstractmethod
    async def get_login_url(self, redirect_uri: str, state: str) -> str:
        raise NotImplementedError

    @abstractmethod
    async def authenticate(self, request: AuthenticationRequest) -> AuthenticationResult:
        raise NotImplementedError


class AuthenticationPlugin(PluginBase):
    login_button_text: str = "Sign in"
    login_button_icon: str = "bi-box-arrow-in-right"

    @abstractmethod
    def create_strategy(self, config: dict[str, str]) -> AuthenticationStrategy:
        raise NotImplementedError


class SearchPlugin(PluginBase):
    priority: int = 100
    supports_fuzzy_search: bool = False
    supports_faceted_search: bool = False
    supports_highlighting: bool = False
    supports_suggestions: bool = False
    max_documents: int | None = None

    @property
    @abstractmethod
    def search_strategy(self) -> "SearchStrategy":
        raise NotImplementedError
