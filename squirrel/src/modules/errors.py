from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


class SquirrelWikiException(Exception):
    """Base for every domain error raised by the wiki services."""

    def __init__(
        self,
        message: str,
        error_code: str = "WIKI_ERROR",
        status_code: int = 500,
        should_log: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.should_log = should_log
        self.context: dict[str, Any] = {}

    def with_context(self, key: str, value: Any) -> "SquirrelWikiException":
        self.context[key] = value
        return self

    def get_user_message(self) -> str:
        return self.message

    def to_dict(self, include_details: bool = False) -> dict[str, Any]:
        body: dict[str, Any] = {
            "error_code": self.error_code,
            "message": self.get_user_message(),
            "details": None,
            "context": None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if include_details:
            body["details"] = self.message
            body["context"] = {k: _jsonable(v) for k, v in self.context.items()}
        return body


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return str(value)


class EntityNotFoundException(SquirrelWikiException):
    def __init__(self, entity_type: str, entity_id: Any):
        super().__init__(
            f"{entity_type} with ID '{entity_id}' was not found",
            "ENTITY_NOT_FOUND",
            status_code=404,
            should_log=False,
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.context["EntityType"] = entity_type
        self.context["EntityId"] = entity_id

    def get_user_message(self) -> str:
        return f"The requested {self.entity_type.lower()} could not be found."


@dataclass
class ValidationError:
    field: str
    message: str
    code: str | None = None


class ValidationException(SquirrelWikiException):
    def __init__(self, errors: list[ValidationError] | str, field: str = ""):
        if isinstance(errors, str):
            errors = [ValidationError(field=field, message=errors)]
        self.errors = list(errors)
        summary = "; ".join(err.message for err in self.errors)
        super().__init__(
            summary or "Validation failed",
            "VALIDATION_ERROR",
            status_code=400,
            should_log=False,
        )
        self.context["Errors"] = [
            {"field": err.field, "message": err.message, "code": err.code} for err in self.errors
        ]

    def get_user_message(self) -> str:
        if len(self.errors) == 1:
            return self.errors[0].message
        joined = "; ".join(err.message for err in self.errors)
        return f"Validation failed with {len(self.errors)} error(s): {joined}"


def format_bytes(size: int | float) -> str:
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    idx = 0
    while value >= 1024 and idx < len(units) - 1:
        value /= 1024
        idx += 1
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {units[idx]}"


class FileSizeExceededException(ValidationException):
    def __init__(self, file_name: str, file_size: int, max_size: int):
        super().__init__(
            f"File '{file_name}' size ({format_bytes(file_size)}) exceeds the maximum "
            f"allowed size ({format_bytes(max_size)})",
            field="file",
        )
        self.file_name = file_name
        self.file_size = file_size
        self.max_size = max_size
        self.context["FileName"] = file_name
        self.context["FileSize"] = file_size
        self.context["MaxSize"] = max_size


class FileTypeNotAllowedException(ValidationException):
    def __init__(self, file_name: str, file_extension: str):
        super().__init__(
            f"File type '{file_extension}' is not allowed. File: {file_name}",
            field="file",
        )
        self.file_name = file_name
        self.file_extension = file_extension
        self.context["FileName"] = file_name
        self.context["FileExtension"] = file_extension


class BusinessRuleException(SquirrelWikiException):
    def __init__(self, message: str, rule_code: str):
        super().__init__(message, "BUSINESS_RULE_VIOLATION", status_code=422, should_log=False)
        self.rule_code = rule_code
        self.context["RuleCode"] = rule_code

    @classmethod
    def slug_already_exists(cls, slug: str, entity_type: str = "Page") -> "BusinessRuleException":
        return cls(f"A {entity_type.lower()} with slug '{slug}' already exists.", "SLUG_EXISTS").with_context(
            "Slug", slug
        )

    @classmethod
    def username_already_exists(cls, username: str) -> "BusinessRuleException":
        return cls(f"Username '{username}' is already taken.", "USERNAME_EXISTS").with_context(
            "Username", username
        )

    @classmethod
    def email_already_exists(cls, email: str) -> "BusinessRuleException":
        return cls(f"Email '{email}' is already registered.", "EMAIL_EXISTS").with_context("Email", email)

    @classmethod
    def max_depth_exceeded(cls, max_depth: int, entity_type: str = "Category") -> "BusinessRuleException":
        return cls(
            f"Maximum {entity_type.lower()} nesting depth of {max_depth} levels would be exceeded.",
            "MAX_DEPTH_EXCEEDED",
        ).with_context("MaxDepth", max_depth)

    @classmethod
    def circular_reference(cls, entity_type: str = "Category") -> "BusinessRuleException":
        return cls(
            f"Cannot move {entity_type.lower()}: would create circular reference.",
            "CIRCULAR_REFERENCE",
        )


class AuthorizationException(SquirrelWikiException):
    def __init__(self, message: str = "Access denied", username: str | None = None, required_role: str | None = None):
        if username and required_role:
            message = f"{message}. User '{username}' requires role '{required_role}'"
        super().__init__(message, "AUTHORIZATION_FAILED", status_code=403, should_log=False)
        self.username = username
        self.required_role = required_role
        if username:
            self.context["Username"] = username
        if required_role:
            self.context["RequiredRole"] = required_role

    def get_user_message(self) -> str:
        return "You do not have permission to perform this action."


class AuthenticationRequiredException(SquirrelWikiException):
    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message, "AUTHENTICATION_REQUIRED", status_code=401, should_log=False)

    def get_user_message(self) -> str:
        return "You must be logged in to perform this action."


class ConfigurationException(SquirrelWikiException):
    def __init__(self, message: str, config_key: str, error_code: str = "CONFIGURATION_ERROR"):
        super().__init__(message, error_code, status_code=500, should_log=True)
        self.config_key = config_key
        self.context["ConfigKey"] = config_key

    def get_user_message(self) -> str:
        return "A configuration error occurred. Please contact the administrator."


class ExternalServiceException(SquirrelWikiException):
    def __init__(self, service_name: str, message: str):
        super().__init__(
            f"External service '{service_name}' failed: {message}",
            "EXTERNAL_SERVICE_ERROR",
            status_code=502,
            should_log=True,
        )
        self.service_name = service_name
        self.endpoint: str | None = None
        self.context["ServiceName"] = service_name

    def with_endpoint(self, endpoint: str) -> "ExternalServiceException":
        self.endpoint = endpoint
        self.context["Endpoint"] = endpoint
        return self

    def get_user_message(self) -> str:
        return f"An error occurred while communicating with {self.service_name}. Please try again later."


class FileStorageException(SquirrelWikiException):
    def __init__(self, message: str, file_path: str | None = None):
        super().__init__(message, "FILE_STORAGE_ERROR", status_code=500, should_log=True)
        self.file_path = file_path
        if file_path:
            self.context["FilePath"] = file_path

    def get_user_message(self) -> str:
        return "An error occurred while accessing file storage."


class FolderException(SquirrelWikiException):
    def __init__(self, message: str, folder_id: int | None = None, folder_name: str | None = None):
        super().__init__(message, "FOLDER_ERROR", status_code=400, should_log=False)
        self.folder_id = folder_id
        self.folder_name = folder_name
        if folder_id is not None:
            self.context["FolderId"] = folder_id
        if folder_name is not None:
            self.context["FolderName"] = folder_name


class FolderDepthExceededException(FolderException):
    def __init__(self, current_depth: int, max_depth: int):
        super().__init__(
            f"Folder depth ({current_depth}) exceeds the maximum allowed depth ({max_depth})"
        )
        self.current_depth = current_depth
        self.max_depth = max_depth
        self.context["CurrentDepth"] = current_depth
        self.context["MaxDepth"] = max_depth


class DuplicateFolderException(FolderException):
    def __init__(self, folder_name: str, parent_folder_id: int | None = None):
        super().__init__(
            f"A folder named '{folder_name}' already exists in this location",
            parent_folder_id,
            folder_name,
        )
