# src/cadence/engine/content.py
"""Message content resolution and per-recipient rendering.

Content is resolved once per send StageRun (``ContentResolver.resolve``)
and stored on the StageRun; each send task then renders the stored
subject/body for its recipient with a sandboxed Jinja2 environment.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any, Protocol

from jinja2 import StrictUndefined, TemplateSyntaxError, UndefinedError
from jinja2.exceptions import SecurityError
from jinja2.sandbox import SandboxedEnvironment

from cadence.contracts.enums import Channel
from cadence.core.flow import FlowGraph, SendNode
from cadence.core.store.models import Recipient

_HTML_TAG = re.compile(r"<\s*(html|body|p|div|br|a|table|span|img|h[1-6])\b", re.IGNORECASE)


class TemplateError(Exception):
    """Error in content rendering (including sandbox violations)."""


@dataclass(frozen=True)
class Content:
    """Resolved message content for one send node."""

    body: str
    subject: str | None = None
    is_html: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Content:
        return cls(
            body=data["body"],
            subject=data.get("subject"),
            is_html=bool(data.get("is_html", False)),
        )


def looks_like_html(text: str) -> bool:
    """Heuristic HTML detection for content that doesn't declare ``is_html``."""
    return bool(_HTML_TAG.search(text))


class ContentResolver(Protocol):
    """Resolves the content a send node delivers on a channel."""

    def resolve(self, node_id: str, channel: Channel) -> Content: ...


class SnapshotContentResolver:
    """Resolves content from the ``contents`` section of a flow snapshot."""

    def __init__(self, graph: FlowGraph) -> None:
        self._graph = graph

    def resolve(self, node_id: str, channel: Channel) -> Content:
        node = self._graph.node(node_id)
        if not isinstance(node, SendNode):
            raise TypeError(f"Node '{node_id}' is not a send node")
        block = self._graph.content(node.content_ref)
        body = str(block["body"])
        subject = block.get("subject")
        if channel is Channel.SMS:
            # SMS carries no subject or markup
            return Content(body=body, subject=None, is_html=False)
        is_html = block.get("is_html")
        return Content(
            body=body,
            subject=str(subject) if subject is not None else None,
            is_html=bool(is_html) if is_html is not None else looks_like_html(body),
        )


class ContentRenderer:
    """Renders content for a recipient in a sandboxed Jinja2 environment.

    Compiled templates are cached per source string, so rendering a large
    batch compiles each distinct subject/body once.

    Example:
        renderer = ContentRenderer()
        message = renderer.render(
            Content(subject="Hi {{ name }}", body="Hello {{ name }}"),
            Recipient("r1", email="ana@example.com", name="Ana"),
        )
        message.subject  # "Hi Ana"
    """

    def __init__(self) -> None:
        self._env = SandboxedEnvironment(
            undefined=StrictUndefined,
            autoescape=False,
        )
        self._cache: dict[str, Any] = {}

    def _template(self, source: str) -> Any:
        if source not in self._cache:
            try:
                self._cache[source] = self._env.from_string(source)
            except TemplateSyntaxError as e:
                raise TemplateError(f"Invalid template syntax: {e}") from e
        return self._cache[source]

    def _render(self, source: str, variables: dict[str, Any]) -> str:
        try:
            return str(self._template(source).render(**variables))
        except UndefinedError as e:
            raise TemplateError(f"Undefined variable: {e}") from e
        except SecurityError as e:
            raise TemplateError(f"Sandbox violation: {e}") from e

    def render(self, content: Content, recipient: Recipient) -> Content:
        """Substitute recipient fields into subject and body.

        Raises:
            TemplateError: If rendering fails (syntax, undefined variable, sandbox)
        """
        variables: dict[str, Any] = {
            **recipient.attributes,
            "recipient_id": recipient.recipient_id,
            "name": recipient.name or "",
            "email": recipient.email or "",
            "phone": recipient.phone or "",
        }
        return Content(
            body=self._render(content.body, variables),
            subject=self._render(content.subject, variables)
            if content.subject is not None
            else None,
            is_html=content.is_html,
        )
