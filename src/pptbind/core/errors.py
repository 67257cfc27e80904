"""Exceptions raised by the template engine and its service layer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable


class PptbindError(Exception):
    """Base class for every error the engine reports to callers."""


class CorruptArchive(PptbindError):
    """Raised when input bytes are not a readable zip container."""


class MissingTemplate(PptbindError):
    """Raised when a template identifier cannot be resolved to a file."""


class TemplateDownloadError(PptbindError):
    """Raised when template bytes cannot be fetched from their URL."""


class StorageUploadError(PptbindError):
    """Raised when a rendered document cannot be persisted."""


class AuthenticationError(PptbindError):
    """Raised when a request carries no usable bearer token."""


@dataclass(frozen=True)
class TemplateIssue:
    """One problem found in a template, addressable by a stable id."""

    message: str
    id: str
    part: str = ""
    tag: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "id": self.id}


class TemplateSyntaxError(PptbindError):
    """Raised when loop tokens are unbalanced or mismatched."""

    summary = "Template processing error"

    def __init__(self, issues: Iterable[TemplateIssue]):
        self.issues = list(issues)
        super().__init__(self._format())

    def details(self) -> list[dict[str, Any]]:
        return [i.to_dict() for i in self.issues]

    def _format(self) -> str:
        lines = [f"{self.summary}:"]
        for issue in self.issues:
            where = f" ({issue.part})" if issue.part else ""
            lines.append(f"- {issue.message}{where}")
        return "\n".join(lines)


class UnknownTagError(TemplateSyntaxError):
    """Raised in strict mode when a token has no value in the data tree."""

    summary = "Unresolved template tags"


class PayloadValidationError(ValueError, PptbindError):
    """Raised when a request payload does not match its JSON schema."""

    header = "Request validation failed:"

    def __init__(self, issues: list[str]):
        self.issues = [str(i).strip() for i in issues if str(i).strip()]
        if not self.issues:
            self.issues = ["Invalid request payload"]
        super().__init__(self._format())

    def _format(self) -> str:
        lines = [self.header]
        for issue in self.issues:
            lines.append(f"- {issue}")
        return "\n".join(lines)


class ConfigValidationError(PayloadValidationError):
    """Raised when service settings are missing or inconsistent."""

    header = "Configuration validation failed:"
