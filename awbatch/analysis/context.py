"""Window-title context classification.

Maps an (app name, window title) pair to a structured :class:`ActivityContext`
(app, project, file, domain, activity type). Contexts are compared with
:func:`is_context_change` to find semantic boundaries between activities.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

ACTIVITY_TYPES = (
    "coding",
    "research",
    "communication",
    "media",
    "productivity",
    "other",
)


@dataclass(frozen=True)
class ActivityContext:
    app: str
    project: Optional[str] = None
    file: Optional[str] = None
    domain: Optional[str] = None
    activity_type: str = "other"


@dataclass
class ContextRule:
    """A classification rule matched by case-insensitive substring on the app name.

    Args:
        app_pattern: Substring to look for in the app name.
        activity_type: Activity type used when ``parse`` does not set one.
        parse: Optional callable ``(title, app) -> dict`` returning any of
            ``project``, ``file``, ``domain``, ``activity_type``.
    """

    app_pattern: str
    activity_type: Optional[str] = None
    parse: Optional[Callable[[str, str], Dict[str, Optional[str]]]] = None


# Spaces are required around separators so hyphenated filenames stay intact.
VSCODE_TITLE_RE = re.compile(
    r"^(.+?)\s+[-—]\s+(.+?)\s+[-—]\s+(?:Visual Studio Code|Cursor)", re.IGNORECASE
)
VSCODE_SHORT_TITLE_RE = re.compile(
    r"^(.+?)\s+[-—]\s+(.+?)\s+[-—]\s+(?:Visual Studio )?Code", re.IGNORECASE
)
BROWSER_DOMAIN_RE = re.compile(
    r"[-—]\s*([a-zA-Z0-9][-a-zA-Z0-9]*(?:\.[a-zA-Z0-9][-a-zA-Z0-9]*)+)"
)

DOMAIN_CATEGORIES = {
    "github.com": "coding",
    "gitlab.com": "coding",
    "stackoverflow.com": "research",
    "google.com": "research",
    "bing.com": "research",
    "docs.google.com": "productivity",
    "notion.so": "productivity",
    "youtube.com": "media",
    "bilibili.com": "media",
    "twitter.com": "communication",
    "x.com": "communication",
    "slack.com": "communication",
    "discord.com": "communication",
    "teams.microsoft.com": "communication",
    "mail.google.com": "communication",
    "outlook.live.com": "communication",
}


def _editor_title(title: str, short_form: bool = True) -> Dict[str, Optional[str]]:
    m = VSCODE_TITLE_RE.match(title)
    if m is None and short_form:
        m = VSCODE_SHORT_TITLE_RE.match(title)
    if m:
        return {
            "file": m.group(1).strip(),
            "project": m.group(2).strip(),
            "activity_type": "coding",
        }
    return {"activity_type": "coding"}


def _main_domain(hostname: str) -> str:
    """'docs.google.com' -> 'google.com'. Naive: ignores public suffixes like co.uk."""
    parts = hostname.split(".")
    if len(parts) > 2:
        return ".".join(parts[-2:])
    return hostname


def _browser_title(title: str) -> Dict[str, Optional[str]]:
    m = BROWSER_DOMAIN_RE.search(title)
    if not m:
        return {"activity_type": "research"}
    domain = m.group(1).lower()
    activity = DOMAIN_CATEGORIES.get(domain) or DOMAIN_CATEGORIES.get(
        _main_domain(domain)
    )
    return {"domain": domain, "activity_type": activity or "research"}


DEFAULT_RULES: List[ContextRule] = [
    ContextRule("code", parse=lambda title, app: _editor_title(title)),
    ContextRule("cursor", parse=lambda title, app: _editor_title(title, False)),
    ContextRule("chrome", parse=lambda title, app: _browser_title(title)),
    ContextRule("msedge", parse=lambda title, app: _browser_title(title)),
    ContextRule("firefox", parse=lambda title, app: _browser_title(title)),
    ContextRule("brave", parse=lambda title, app: _browser_title(title)),
    ContextRule("google chrome", parse=lambda title, app: _browser_title(title)),
    ContextRule("slack", "communication"),
    ContextRule("discord", "communication"),
    ContextRule("teams", "communication"),
    ContextRule("wechat", "communication"),
    ContextRule("notion", "productivity"),
    ContextRule("obsidian", "productivity"),
    ContextRule("spotify", "media"),
    ContextRule("vlc", "media"),
]

_active_rules: List[ContextRule] = list(DEFAULT_RULES)


def set_context_rules(rules: List[ContextRule]) -> None:
    """Install custom rules ahead of the defaults."""
    global _active_rules
    _active_rules = list(rules) + list(DEFAULT_RULES)


def get_context_rules() -> List[ContextRule]:
    return list(_active_rules)


def rule_from_config(entry: Dict) -> ContextRule:
    """Build a rule from a config mapping.

    Recognised keys: ``app_pattern`` (required), ``activity_type`` and
    ``title_regex``. Named groups ``project``, ``file`` and ``domain`` in
    ``title_regex`` are copied into the context.
    """
    pattern = str(entry.get("app_pattern") or "").strip()
    if not pattern:
        raise ValueError("context rule requires a non-empty app_pattern")
    activity = entry.get("activity_type")
    if activity is not None and activity not in ACTIVITY_TYPES:
        raise ValueError(f"unknown activity_type {activity!r} for rule {pattern!r}")

    parse = None
    title_regex = entry.get("title_regex")
    if title_regex:
        rx = re.compile(title_regex, re.IGNORECASE)

        def parse(title: str, app: str) -> Dict[str, Optional[str]]:
            m = rx.search(title)
            if not m:
                return {}
            groups = m.groupdict()
            return {
                k: (groups[k] or "").strip() or None
                for k in ("project", "file", "domain")
                if k in groups
            }

    return ContextRule(pattern, activity, parse)


def classify(app_name: Optional[str], window_title: Optional[str]) -> ActivityContext:
    """Parse a window's app name and title into an ActivityContext."""
    app = app_name or ""
    title = window_title or ""
    app_lower = app.lower()

    for rule in _active_rules:
        if rule.app_pattern.lower() not in app_lower:
            continue
        parsed = rule.parse(title, app) if rule.parse else {}
        activity = parsed.get("activity_type") or rule.activity_type or "other"
        return ActivityContext(
            app=app,
            project=parsed.get("project"),
            file=parsed.get("file"),
            domain=parsed.get("domain"),
            activity_type=activity,
        )

    return ActivityContext(app=app)


def is_context_change(
    prev: Optional[ActivityContext], current: ActivityContext
) -> bool:
    """True when ``current`` starts a different activity than ``prev``."""
    if prev is None:
        return True
    if prev.app.lower() != current.app.lower():
        return True
    # Transitions to or from no project count, e.g. editor welcome screen.
    if prev.project != current.project:
        return True
    return prev.domain != current.domain


def context_label(ctx: ActivityContext) -> str:
    """Human-readable label, e.g. 'Code - aw-batch-worker'."""
    if ctx.project:
        return f"{ctx.app} - {ctx.project}"
    if ctx.domain:
        return f"{ctx.app} - {ctx.domain}"
    return ctx.app

