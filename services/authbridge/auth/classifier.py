"""Callback URL classification.

Two tiers, tried in order:

1. Pattern tier: each matcher's regexes are tested against the full URL in
   registration order. The first matcher with a hit owns the callback.
2. Parameter tier: a URL carrying ``code``, ``access_token`` or
   ``SAMLResponse`` (query or fragment) is a probable callback. Its provider
   is labelled by a plain keyword scan, or ``"unknown"``.

Keywords only label parameter-tier hits. They never change which matcher
wins the pattern tier.
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from urllib.parse import parse_qs, unquote, urlsplit

UNKNOWN_PROVIDER = "unknown"
CALLBACK_PARAMS = ("code", "access_token", "SAMLResponse")


@dataclass(frozen=True)
class TokenExtractors:
    """Last-resort regexes for pulling credentials out of a raw URL."""

    code: re.Pattern[str] | None = None
    token: re.Pattern[str] | None = None
    state: re.Pattern[str] | None = None


@dataclass(frozen=True)
class CallbackMatcher:
    """Recognizes one provider's callback URLs."""

    provider_id: str
    patterns: tuple[re.Pattern[str], ...] = ()
    keywords: tuple[str, ...] = ()
    extractors: TokenExtractors = field(default_factory=TokenExtractors)

    @classmethod
    def build(
        cls,
        provider_id: str,
        patterns: Iterable[str] = (),
        keywords: Iterable[str] = (),
        *,
        code: str | None = None,
        token: str | None = None,
        state: str | None = None,
    ) -> "CallbackMatcher":
        """Compile string patterns (case-insensitive) into a matcher."""
        return cls(
            provider_id=provider_id,
            patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns),
            keywords=tuple(k.lower() for k in keywords),
            extractors=TokenExtractors(
                code=re.compile(code) if code else None,
                token=re.compile(token) if token else None,
                state=re.compile(state) if state else None,
            ),
        )

    def matches(self, url: str) -> bool:
        return any(p.search(url) for p in self.patterns)

    def mentioned_in(self, url: str) -> bool:
        lowered = url.lower()
        return any(k in lowered for k in self.keywords)


# --- Match results ---


@dataclass(frozen=True)
class PatternMatch:
    """The URL matched a provider's callback pattern."""

    provider_id: str


@dataclass(frozen=True)
class ParameterHeuristic:
    """No pattern matched, but the URL carries callback parameters."""

    label: str = UNKNOWN_PROVIDER


@dataclass(frozen=True)
class NoMatch:
    """Not a callback."""


MatchResult = PatternMatch | ParameterHeuristic | NoMatch


@dataclass(frozen=True)
class Classification:
    is_callback: bool
    provider_id: str
    match: MatchResult


@dataclass(frozen=True)
class CallbackParams:
    """Credential-bearing parameters found in a callback URL."""

    code: str | None = field(default=None, repr=False)
    access_token: str | None = field(default=None, repr=False)
    state: str | None = None
    error: str | None = None
    error_description: str | None = None
    saml_response: str | None = field(default=None, repr=False)
    relay_state: str | None = None

    @property
    def has_credential(self) -> bool:
        return bool(self.code or self.access_token)


def _first(params: dict[str, list[str]], name: str) -> str | None:
    values = params.get(name)
    return values[0] if values else None


def _split_params(url: str) -> tuple[dict[str, list[str]], dict[str, list[str]]]:
    parts = urlsplit(url)
    return parse_qs(parts.query), parse_qs(parts.fragment)


def has_callback_params(url: str) -> bool:
    """True when the query or fragment carries code, access_token or SAMLResponse."""
    query, fragment = _split_params(url)
    return any(name in query or name in fragment for name in CALLBACK_PARAMS)


def _regex_value(pattern: re.Pattern[str] | None, url: str) -> str | None:
    if pattern is None:
        return None
    match = pattern.search(url)
    return unquote(match.group(1)) if match else None


def extract_callback_params(url: str, matcher: CallbackMatcher | None = None) -> CallbackParams:
    """Pull callback parameters from the query, then the fragment, then matcher regexes."""
    query, fragment = _split_params(url)

    def lookup(name: str) -> str | None:
        return _first(query, name) or _first(fragment, name)

    code = lookup("code")
    access_token = lookup("access_token")
    state = lookup("state")

    if matcher is not None:
        code = code or _regex_value(matcher.extractors.code, url)
        access_token = access_token or _regex_value(matcher.extractors.token, url)
        state = state or _regex_value(matcher.extractors.state, url)

    return CallbackParams(
        code=code,
        access_token=access_token,
        state=state,
        error=lookup("error"),
        error_description=lookup("error_description"),
        saml_response=lookup("SAMLResponse"),
        relay_state=lookup("RelayState"),
    )


class CallbackClassifier:
    """Ordered two-tier callback detector."""

    def __init__(self, matchers: Iterable[CallbackMatcher] = ()) -> None:
        self._matchers = list(matchers)

    @property
    def matchers(self) -> tuple[CallbackMatcher, ...]:
        return tuple(self._matchers)

    def matcher_for(self, provider_id: str) -> CallbackMatcher | None:
        for matcher in self._matchers:
            if matcher.provider_id == provider_id:
                return matcher
        return None

    def pattern_match(self, url: str) -> CallbackMatcher | None:
        """First matcher, in order, whose pattern hits the URL."""
        for matcher in self._matchers:
            if matcher.matches(url):
                return matcher
        return None

    def label(self, url: str) -> str:
        """Keyword label for a URL no pattern claimed."""
        for matcher in self._matchers:
            if matcher.mentioned_in(url):
                return matcher.provider_id
        return UNKNOWN_PROVIDER

    def classify(self, url: str) -> Classification:
        matcher = self.pattern_match(url)
        if matcher is not None:
            return Classification(True, matcher.provider_id, PatternMatch(matcher.provider_id))

        if has_callback_params(url):
            label = self.label(url)
            return Classification(True, label, ParameterHeuristic(label))

        return Classification(False, UNKNOWN_PROVIDER, NoMatch())

    def identify_provider(self, url: str) -> str:
        matcher = self.pattern_match(url)
        if matcher is not None:
            return matcher.provider_id
        return self.label(url)


_CODE = r"[?&]code=([^&#]+)"
_TOKEN = r"[?&#]access_token=([^&]+)"
_STATE = r"[?&]state=([^&#]+)"

# Catalog for callbacks scraped from ordinary browsing (developer-tool
# integrations rather than enterprise IdPs).
AMBIENT_MATCHERS: tuple[CallbackMatcher, ...] = (
    CallbackMatcher.build(
        "github",
        [r"callback.*github", r"github.*callback", r"oauth.*github", r"github.*oauth"],
        ["github"],
        code=_CODE,
        state=_STATE,
    ),
    CallbackMatcher.build(
        "google",
        [r"callback.*google", r"google.*callback", r"oauth2.*google"],
        ["google"],
        code=_CODE,
        token=_TOKEN,
        state=_STATE,
    ),
    CallbackMatcher.build(
        "microsoft",
        [
            r"callback.*microsoft",
            r"microsoft.*callback",
            r"oauth.*azure",
            r"login\.microsoftonline",
        ],
        ["microsoft", "azure"],
        code=_CODE,
        token=_TOKEN,
        state=_STATE,
    ),
    CallbackMatcher.build(
        "openai",
        [r"callback.*openai", r"openai.*callback", r"oauth.*openai"],
        ["openai"],
        code=_CODE,
        token=_TOKEN,
    ),
    CallbackMatcher.build(
        "gitlab",
        [r"callback.*gitlab", r"gitlab.*callback", r"oauth.*gitlab"],
        ["gitlab"],
        code=_CODE,
        state=_STATE,
    ),
    CallbackMatcher.build(
        "bitbucket",
        [r"callback.*bitbucket", r"bitbucket.*callback", r"oauth.*bitbucket"],
        ["bitbucket"],
        code=_CODE,
        state=_STATE,
    ),
    CallbackMatcher.build(
        "anthropic",
        [r"callback.*anthropic", r"anthropic.*callback", r"oauth.*claude"],
        ["anthropic", "claude"],
        code=_CODE,
        token=_TOKEN,
    ),
)
