"""Message body resolution for dispatch jobs.

Bodies come from one of two places: a non-blank ``payload.text`` sent verbatim,
or a tenant-scoped enabled template whose ``{{dotted.path}}`` placeholders are
filled from the job payload. Rendering never fails; an unresolvable
placeholder becomes an empty string.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Protocol

from .store import JobRecord, TemplateRecord

TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
TEMPLATE_LOOKUP_ERROR = "TEMPLATE_LOOKUP_ERROR"

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")


class TemplateResolutionError(Exception):
    code = "TEMPLATE_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TemplateNotFoundError(TemplateResolutionError):
    code = TEMPLATE_NOT_FOUND


class TemplateLookupError(TemplateResolutionError):
    code = TEMPLATE_LOOKUP_ERROR


class TemplateSource(Protocol):
    def get_template(self, tenant_id: str, key: str) -> TemplateRecord | None: ...


def _format_primitive(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (str, int, float)):
        return str(value)
    return ""


def resolve_path(payload: Mapping[str, Any], path: str) -> str:
    current: object = payload
    for segment in path.split("."):
        if not segment or isinstance(current, (list, tuple)) or not isinstance(current, Mapping):
            return ""
        if segment not in current:
            return ""
        current = current[segment]
    return _format_primitive(current)


def render_template(body: str, payload: Mapping[str, Any] | None) -> str:
    values: Mapping[str, Any] = payload if isinstance(payload, Mapping) else {}
    return _PLACEHOLDER_RE.sub(lambda match: resolve_path(values, match.group(1)), body)


def payload_text_override(payload: Mapping[str, Any] | None) -> str | None:
    if not isinstance(payload, Mapping):
        return None
    text = payload.get("text")
    if isinstance(text, str) and text.strip():
        return text
    return None


class TemplateResolver:
    def __init__(self, source: TemplateSource) -> None:
        self._source = source

    def resolve(self, tenant_id: str, template_key: str, payload: Mapping[str, Any] | None) -> str:
        try:
            template = self._source.get_template(tenant_id, template_key)
        except Exception as exc:
            raise TemplateLookupError(f"{TEMPLATE_LOOKUP_ERROR}: {exc}") from exc
        if template is None:
            raise TemplateNotFoundError(f"{TEMPLATE_NOT_FOUND}: {template_key}")
        return render_template(template.body, payload)


def resolve_message_body(job: JobRecord, resolver: TemplateResolver) -> str:
    override = payload_text_override(job.payload)
    if override is not None:
        return override
    return resolver.resolve(job.tenant_id, job.template_key, job.payload)
