"""
MCP Router.

Decides, per request, whether and which tool servers to expose.

The keyword classifier is a soft exposure filter: every category still
asks for servers, so the downstream model makes the final call on whether
to use a tool. Keyword lists live in ``KeywordPolicy`` and can be swapped
without touching the routing logic.

Users can steer routing with bracketed directives in their message:

- ``[use-mcp]`` / ``[force-mcp]``: always expose servers
- ``[skip-mcp]`` / ``[no-mcp]``: never expose servers
- ``[mcp-verbose]`` / ``[verbose-mcp]``: auto routing, verbose output
- ``[use-server:<id>]``: expose only the named server(s)
- ``[exclude-server:<id>]``: drop a server from auto routing
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

import structlog

from mcp_orchestrator.mcp.registry import ServerRegistry
from mcp_orchestrator.mcp.types import (
    ConnectionStatus,
    PreferenceMode,
    RequestContext,
    RoutingDecision,
    UserPreference,
)

logger = structlog.get_logger(__name__)


class RequestCategory(str, Enum):
    DESIGN = "design"
    QUERY = "query"
    MODIFY = "modify"
    QUESTION = "question"
    UNKNOWN = "unknown"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


@dataclass(frozen=True)
class KeywordPolicy:
    """Keyword lists and tag/tool hints used by the request classifier."""

    knowledge: tuple[str, ...] = (
        "best practice",
        "recommend",
        "should i",
        "how to",
        "design",
        "architecture",
        "pattern",
        "optimize",
        "index",
        "performance",
        "constraint",
        "normalize",
        "partition",
        "security",
        "audit",
        "trigger",
        "function",
        "procedure",
        "view",
        "materialized",
        "jsonb",
        "array",
        "enum",
        "domain",
        "extension",
        "timescaledb",
        "postgis",
        "pgvector",
        "citus",
        "multi-tenant",
        "sharding",
        "replication",
        "backup",
    )
    design: tuple[str, ...] = (
        "create schema",
        "design",
        "build",
        "implement",
        "e-commerce",
        "blog",
        "cms",
        "social",
        "analytics",
        "inventory",
        "booking",
        "reservation",
        "marketplace",
        "saas",
        "multi-tenant",
    )
    simple: tuple[str, ...] = (
        "add column",
        "remove column",
        "rename table",
        "drop table",
        "list tables",
        "show schema",
        "delete",
        "update",
    )
    question: tuple[str, ...] = (
        "what is",
        "how does",
        "explain",
        "difference between",
        "when to use",
        "why",
        "pros and cons",
    )
    query_words: tuple[str, ...] = ("list", "show", "get")
    domain_words: tuple[str, ...] = ("postgres", "database")
    base_tags: tuple[str, ...] = ("postgres", "database")
    design_tags: tuple[str, ...] = ("postgres", "database", "design")
    suggested_tools: dict[str, tuple[str, ...]] = field(
        default_factory=lambda: {
            RequestCategory.DESIGN.value: ("semantic_search_postgres_docs", "view_skill"),
            RequestCategory.QUESTION.value: ("semantic_search_postgres_docs",),
        }
    )


@dataclass
class RequestAnalysis:
    """Outcome of classifying a request."""

    requires_mcp_knowledge: bool
    suggested_servers: list[str]
    suggested_tools: list[str]
    complexity: Complexity
    category: RequestCategory
    confidence: float
    tags: list[str]


# Directive patterns (server ids keep their original case)
_SERVER_ID = r"[\w-]+"
_FORCE_RE = re.compile(r"\[(?:use|force)-mcp\]", re.IGNORECASE)
_SKIP_RE = re.compile(r"\[(?:skip|no)-mcp\]", re.IGNORECASE)
_VERBOSE_RE = re.compile(r"\[(?:mcp-verbose|verbose-mcp)\]", re.IGNORECASE)
_USE_SERVER_RE = re.compile(rf"\[use-server:({_SERVER_ID})\]", re.IGNORECASE)
_EXCLUDE_SERVER_RE = re.compile(rf"\[exclude-server:({_SERVER_ID})\]", re.IGNORECASE)
_DIRECTIVE_RE = re.compile(
    rf"\[(?:use-mcp|force-mcp|skip-mcp|no-mcp|mcp-verbose|verbose-mcp"
    rf"|use-server:{_SERVER_ID}|exclude-server:{_SERVER_ID})\]",
    re.IGNORECASE,
)


def _unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


class Router:
    """
    Routes requests to MCP servers.

    Usage:
        router = Router(registry)
        decision = router.route(RequestContext(user_message="design a blog schema"))
    """

    def __init__(self, registry: ServerRegistry, policy: KeywordPolicy | None = None):
        self._registry = registry
        self.policy = policy or KeywordPolicy()
        self._logger = logger.bind(component="Router")

    # ─────────────────────────────────────────────────────────────────────────
    # Analysis
    # ─────────────────────────────────────────────────────────────────────────

    def analyze_request(self, context: RequestContext) -> RequestAnalysis:
        """Classify a request and find candidate servers for it."""
        policy = self.policy
        message = context.user_message.lower().strip()

        knowledge_matches = self._count_matches(message, policy.knowledge)
        design_matches = self._count_matches(message, policy.design)
        simple_matches = self._count_matches(message, policy.simple)
        question_matches = self._count_matches(message, policy.question)

        if design_matches > 0 or knowledge_matches >= 2:
            category = RequestCategory.DESIGN
            complexity = Complexity.COMPLEX
            tags = list(policy.design_tags)
            confidence = min(0.9, 0.6 + (design_matches + knowledge_matches) * 0.1)
        elif question_matches > 0 or knowledge_matches > 0:
            category = RequestCategory.QUESTION
            complexity = Complexity.MODERATE
            tags = list(policy.base_tags)
            confidence = 0.8
        elif simple_matches > 0 and len(message) < 100:
            category = RequestCategory.MODIFY
            complexity = Complexity.SIMPLE
            tags = list(policy.base_tags)
            confidence = 0.7
        elif any(word in message for word in policy.query_words):
            category = RequestCategory.QUERY
            complexity = Complexity.SIMPLE
            tags = list(policy.base_tags)
            confidence = 0.8
        else:
            category = RequestCategory.UNKNOWN
            complexity = Complexity.MODERATE
            tags = list(policy.base_tags)
            confidence = 0.6

        # Very short edits stay simple
        if len(message) < 50 and simple_matches > 0:
            complexity = Complexity.SIMPLE
            confidence = 0.9

        if any(word in message for word in policy.domain_words):
            tags.extend(policy.base_tags)
            confidence = max(confidence, 0.85)

        tags = _unique(tags)
        confidence = round(confidence, 4)

        # Every category asks for servers; the model decides whether to call them
        requires_mcp_knowledge = True
        suggested_servers = self._find_servers_by_tags(tags) if tags else []
        suggested_tools = list(policy.suggested_tools.get(category.value, ()))

        return RequestAnalysis(
            requires_mcp_knowledge=requires_mcp_knowledge,
            suggested_servers=suggested_servers,
            suggested_tools=suggested_tools,
            complexity=complexity,
            category=category,
            confidence=confidence,
            tags=tags,
        )

    @staticmethod
    def _count_matches(message: str, keywords: tuple[str, ...]) -> int:
        return sum(1 for keyword in keywords if keyword in message)

    def _find_servers_by_tags(self, tags: list[str]) -> list[str]:
        """Connected servers carrying any of the tags, highest priority first."""
        found: list[str] = []
        for tag in tags:
            for server in self._registry.get_servers_by_tag(tag):
                if server.status == ConnectionStatus.CONNECTED and server.id not in found:
                    found.append(server.id)

        # Stable sort: equal priorities keep discovery order
        return sorted(found, key=self._priority_of, reverse=True)

    def _priority_of(self, server_id: str) -> int:
        instance = self._registry.get_server(server_id)
        return instance.config.priority if instance else 0

    def _connected_server_ids(self) -> list[str]:
        return [s.id for s in self._registry.get_connected_servers()]

    # ─────────────────────────────────────────────────────────────────────────
    # User directives
    # ─────────────────────────────────────────────────────────────────────────

    def parse_user_preference(self, message: str) -> UserPreference:
        """
        Read bracketed directives from a message.

        Precedence: skip, then force / use-server, then verbose, then auto.
        Exclusions are attached whatever the mode.
        """
        preferred = _unique(_USE_SERVER_RE.findall(message))
        excluded = _unique(_EXCLUDE_SERVER_RE.findall(message))

        if _SKIP_RE.search(message):
            return UserPreference(
                mode=PreferenceMode.SKIP,
                excluded_servers=excluded,
                reason="User requested to skip MCP",
            )

        if preferred:
            return UserPreference(
                mode=PreferenceMode.FORCE,
                preferred_servers=preferred,
                excluded_servers=excluded,
                reason=f"User requested specific server: {', '.join(preferred)}",
            )

        if _FORCE_RE.search(message):
            return UserPreference(
                mode=PreferenceMode.FORCE,
                excluded_servers=excluded,
                reason="User explicitly requested MCP usage",
            )

        if _VERBOSE_RE.search(message):
            return UserPreference(
                mode=PreferenceMode.VERBOSE,
                excluded_servers=excluded,
                reason="User requested verbose MCP output",
            )

        if excluded:
            return UserPreference(
                mode=PreferenceMode.AUTO,
                excluded_servers=excluded,
                reason=f"User excluded server: {', '.join(excluded)}",
            )

        return UserPreference(mode=PreferenceMode.AUTO, reason="Default auto mode")

    def clean_message(self, message: str) -> str:
        """Remove every routing directive. Idempotent."""
        cleaned = message
        while True:
            # Removing one directive can splice a new one together
            stripped = _DIRECTIVE_RE.sub("", cleaned)
            if stripped == cleaned:
                break
            cleaned = stripped
        return cleaned.strip()

    # ─────────────────────────────────────────────────────────────────────────
    # Routing
    # ─────────────────────────────────────────────────────────────────────────

    def route(self, context: RequestContext) -> RoutingDecision:
        """Combine request analysis with the user's preference into a decision."""
        analysis = self.analyze_request(context)
        preference = context.user_preference or self.parse_user_preference(context.user_message)

        if preference.mode == PreferenceMode.SKIP:
            return RoutingDecision(
                use_mcp=False,
                preferred_servers=[],
                reason=preference.reason or "User skipped MCP usage",
                confidence=1.0,
            )

        if preference.mode == PreferenceMode.FORCE:
            servers = list(preference.preferred_servers or analysis.suggested_servers)
            if not servers:
                servers = self._connected_server_ids()
            return RoutingDecision(
                use_mcp=True,
                preferred_servers=servers,
                reason=preference.reason or "User forced MCP usage",
                confidence=1.0,
            )

        servers = list(analysis.suggested_servers)
        if preference.excluded_servers:
            servers = [s for s in servers if s not in preference.excluded_servers]
        if preference.preferred_servers:
            servers = list(preference.preferred_servers)
        if not servers:
            servers = [
                s for s in self._connected_server_ids() if s not in preference.excluded_servers
            ]

        use_mcp = len(servers) > 0
        verbose = preference.mode == PreferenceMode.VERBOSE
        if use_mcp:
            reason = (
                f"Auto: MCP tools available for {analysis.category.value} task "
                f"(confidence: {analysis.confidence})"
            )
        else:
            reason = "Auto: No MCP servers connected, using built-in tools only"
        if verbose:
            reason = f"Verbose {reason}"

        return RoutingDecision(
            use_mcp=use_mcp,
            preferred_servers=servers,
            reason=reason,
            confidence=analysis.confidence,
            verbose=verbose,
        )

    def log_decision(self, context: RequestContext, decision: RoutingDecision) -> None:
        message = context.user_message
        preview = message[:100] + ("..." if len(message) > 100 else "")
        self._logger.info(
            "Routing decision",
            message=preview,
            use_mcp=decision.use_mcp,
            servers=decision.preferred_servers,
            reason=decision.reason,
            confidence=decision.confidence,
        )
