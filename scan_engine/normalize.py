"""Canonicalization & identity.

This module contains the deterministic logic that gives every fetched posting
a stable identity:
- URL normalization (host case, default ports, tracking parameters, slashes)
- dedupe-key derivation (URL first, company+title fallback)
- remote-type inference and timestamp parsing shared by all connectors

Everything here is a pure function with no network or shared state, so it is
safe to call from concurrent fetch workers without synchronization.

Dedupe keys come in four shapes:

    url:<normalized url>              one posting per URL (the common case)
    url:<normalized url>#<hash>       the board reuses one URL for several roles
    ct:<hash>                         no URL at all; company + title identify it
    ext:<prefix>:<external id>        nothing but the source's own id

`<hash>` is the first 16 hex digits (64 bits) of sha256 over the lower-cased,
whitespace-collapsed "company|title" pair. Two distinct pairs collide with
probability ~n^2 / 2^65, i.e. about 2.7e-8 for a million postings under the
same URL; that limit is accepted and covered by tests.
"""

from __future__ import annotations

import html
import re
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .models import RemoteType
from .utils import stable_id

# Query parameters that only carry attribution and never select a posting.
TRACKING_PARAMS = frozenset(
    {
        "gclid",
        "fbclid",
        "msclkid",
        "mc_cid",
        "mc_eid",
        "_hsenc",
        "_hsmi",
        "gh_src",
        "lever-source",
        "lever-origin",
        "trk",
        "trackingid",
        "source",
        "src",
        "ref",
        "referrer",
    }
)
TRACKING_PREFIXES = ("utm_",)

DEFAULT_PORTS = (80, 443)
IDENTITY_HASH_LENGTH = 16

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
_MULTI_SLASH_RE = re.compile(r"/{2,}")
_WS_RE = re.compile(r"\s+")

REMOTE_PATTERNS = re.compile(r"\b(remote|anywhere|work from home|wfh|distributed)\b")
HYBRID_PATTERNS = re.compile(r"\bhybrid\b")
ONSITE_PATTERNS = re.compile(r"\b(on-?site|in[- ]office|in person)\b")


def _is_tracking_param(name: str) -> bool:
    key = name.strip().lower()
    return key in TRACKING_PARAMS or key.startswith(TRACKING_PREFIXES)


def normalize_url(raw: Optional[str]) -> str:
    """Return the canonical form of a posting or career-site URL.

    The function is idempotent: normalize_url(normalize_url(x)) == normalize_url(x).
    Input that cannot be parsed as a URL is returned stripped but otherwise untouched.
    """
    original = (raw or "").strip()
    if not original:
        return ""

    candidate = original if _SCHEME_RE.match(original) else "https://" + original.lstrip("/")
    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError:
        return original

    host = (parts.hostname or "").rstrip(".")
    if not host:
        return original
    if ":" in host:
        host = f"[{host}]"

    scheme = parts.scheme.lower()
    if scheme == "http":
        scheme = "https"

    netloc = host if port is None or port in DEFAULT_PORTS else f"{host}:{port}"

    path = _MULTI_SLASH_RE.sub("/", parts.path) or "/"
    if len(path) > 1:
        path = path.rstrip("/") or "/"

    pairs = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if not _is_tracking_param(k)]
    query = urlencode(sorted(pairs))

    # Hash routes ("#/jobs/42") address a page in single-page career sites.
    fragment = parts.fragment if parts.fragment.startswith(("/", "!/")) else ""

    return urlunsplit((scheme, netloc, path, query, fragment))


def collapse_whitespace(text: Optional[str]) -> str:
    return _WS_RE.sub(" ", text or "").strip()


def identity_text(text: Optional[str]) -> str:
    """Lower-cased, whitespace-collapsed text used for identity comparisons."""
    return collapse_whitespace(text).lower()


def company_title_hash(company: Optional[str], title: Optional[str]) -> str:
    return stable_id(identity_text(company), identity_text(title), length=IDENTITY_HASH_LENGTH)


def compute_dedupe_key(
    *,
    apply_url: Optional[str] = None,
    job_url: Optional[str] = None,
    company: Optional[str] = None,
    title: Optional[str] = None,
    external_id: Optional[str] = None,
    source_prefix: Optional[str] = None,
    shared_url: bool = False,
) -> str:
    """Compute the dedupe key for a posting.

    The apply URL wins over the job URL. The company+title pair only
    contributes when there is no URL, or when `shared_url` says the URL is
    reused by several roles; in that case it is appended to the URL key
    rather than replacing it, so the key still says where the posting lives.

    Raises:
        ValueError: when no URL, no company+title and no external id is given.
    """
    url = normalize_url(apply_url) or normalize_url(job_url)
    has_identity = bool(identity_text(company) and identity_text(title))

    if url:
        if shared_url:
            if has_identity:
                return f"url:{url}#{company_title_hash(company, title)}"
            if external_id:
                return f"url:{url}#ext:{str(external_id).strip()}"
        return f"url:{url}"

    if has_identity:
        return f"ct:{company_title_hash(company, title)}"

    if external_id is not None and str(external_id).strip() and source_prefix:
        return f"ext:{source_prefix}:{str(external_id).strip()}"

    raise ValueError("cannot derive a dedupe key without a URL, company+title or external id")


def url_identifies_posting(url: Optional[str], *tokens: Any) -> bool:
    """Whether `url` carries one of the posting's own identifiers.

    A token matches a path segment, a query value or a hash-route segment,
    either whole or as a `-`/`_` separated piece (`123-backend-engineer`).
    Comparison is case-insensitive. With no usable token the URL is taken as
    posting-specific. The answer depends on the record alone, so a posting
    keeps its key no matter which other roles arrive in the same fetch.
    """
    wanted = {str(t).strip().lower() for t in tokens if t is not None and str(t).strip()}
    if not wanted:
        return True
    normalized = normalize_url(url)
    if not normalized:
        return False

    parts = urlsplit(normalized)
    pieces = [p for p in parts.path.split("/") if p]
    pieces += [value for _, value in parse_qsl(parts.query) if value]
    pieces += [p for p in parts.fragment.split("/") if p and p not in ("#", "!")]
    for piece in pieces:
        piece = piece.lower()
        if piece in wanted or wanted.intersection(re.split(r"[-_]", piece)):
            return True
    return False


def infer_remote_type(
    location: Optional[str] = None,
    remote_flag: Optional[bool] = None,
    text: Optional[str] = None,
) -> RemoteType:
    """Infer the remote type from an explicit flag and free-text hints."""
    if remote_flag:
        return "REMOTE"
    blob = f"{location or ''}\n{text or ''}".lower()
    if HYBRID_PATTERNS.search(blob):
        return "HYBRID"
    if REMOTE_PATTERNS.search(blob):
        return "REMOTE"
    if ONSITE_PATTERNS.search(blob):
        return "ONSITE"
    if remote_flag is False and (location or "").strip():
        return "ONSITE"
    return "UNKNOWN"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Normalize ISO strings and epoch seconds/milliseconds to an aware UTC datetime."""
    if value is None:
        return None

    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        ts = float(value)
        # Some boards return epoch in ms; convert if so.
        if ts > 1e12:
            ts /= 1000.0
        try:
            return datetime.fromtimestamp(ts, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    return None


_TAG_RE = re.compile(r"<[^>]+>")


def html_to_text(fragment: Optional[str]) -> Optional[str]:
    """Strip markup from a (possibly entity-escaped) HTML fragment."""
    if not fragment:
        return None
    text = html.unescape(_TAG_RE.sub(" ", html.unescape(fragment)))
    text = collapse_whitespace(text)
    return text or None
