"""Boundaries to the external capabilities the engine drives.

Two collaborators live outside this package:
- a content generator (language-model completion) used by the contact-hunt,
  drafting and blueprint steps
- a browser renderer used only to probe career sites whose URL alone does not
  reveal the ATS

Both are black boxes that may hang or return garbage. Calls go through
`call_with_timeout`, and generated output is parsed with `parse_json_response`,
which never raises: malformed output becomes an explicit failed ParseResult
and callers substitute a fallback.
"""

from __future__ import annotations

import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any, Callable, List, Literal, Optional, Protocol, TypeVar

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .errors import CapabilityTimeout, PolicyBudgetExceeded
from .policy import PolicyEnforcer

LOG = logging.getLogger(__name__)

T = TypeVar("T")


class CompletionOptions(BaseModel):
    timeout_s: float = Field(default=60.0, gt=0)
    response_format: Literal["text", "json"] = "text"
    max_tokens: Optional[int] = None


class ContentGenerator(Protocol):
    def complete(self, prompt: str, mode: str, options: CompletionOptions) -> str:
        ...


class RenderedPage(BaseModel):
    url: str
    html: str = ""
    screenshots: List[str] = Field(default_factory=list)


class BrowserRenderer(Protocol):
    def navigate(self, url: str) -> RenderedPage:
        ...


def call_with_timeout(fn: Callable[[], T], timeout_s: Optional[float], label: str) -> T:
    """Run `fn` and raise CapabilityTimeout if it overruns `timeout_s`.

    The overrunning call is abandoned, not killed; its result is discarded.
    """
    if timeout_s is None:
        return fn()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"capability-{label}")
    try:
        future = executor.submit(fn)
        try:
            return future.result(timeout=timeout_s)
        except FuturesTimeout:
            future.cancel()
            raise CapabilityTimeout(label, timeout_s) from None
    finally:
        executor.shutdown(wait=False)


def estimate_tokens(text: str) -> int:
    """Approximate token count for plain text."""
    if not text:
        return 0
    # Conservative heuristic for English-ish text.
    return max(1, int(len(text) / 3.6))


class ParseResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    raw_response: str = ""


_JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_JSON_BODY_RE = re.compile(r"(\{[\s\S]*\}|\[[\s\S]*\])")


def extract_json(response: str) -> str:
    """Pull the JSON body out of a response that may wrap it in prose or a code fence."""
    trimmed = (response or "").strip()
    block = _JSON_BLOCK_RE.search(trimmed)
    if block:
        return block.group(1).strip()
    body = _JSON_BODY_RE.search(trimmed)
    if body:
        return body.group(1)
    return trimmed


def parse_json_response(response: str, schema: Any) -> ParseResult:
    """Parse and validate generated JSON against `schema`. Never raises."""
    try:
        parsed = json.loads(extract_json(response))
        data = TypeAdapter(schema).validate_python(parsed)
    except json.JSONDecodeError as exc:
        return ParseResult(success=False, error=f"Invalid JSON: {exc}", raw_response=response or "")
    except ValidationError as exc:
        issues = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return ParseResult(success=False, error=f"Validation failed: {issues}", raw_response=response or "")
    return ParseResult(success=True, data=data, raw_response=response)


class GenerationResult(BaseModel):
    text: str = ""
    used_fallback: bool = False
    note: Optional[str] = None


class GuardedGenerator:
    """Content generator wrapped in the run's token budget and timeouts.

    In simulation mode the prompt is still charged against the token budget
    but the generator is never called.
    """

    def __init__(
        self,
        generator: Optional[ContentGenerator],
        enforcer: PolicyEnforcer,
        default_timeout_s: float = 60.0,
    ) -> None:
        self._generator = generator
        self._enforcer = enforcer
        self._default_timeout_s = default_timeout_s

    @property
    def available(self) -> bool:
        return self._generator is not None

    def complete(
        self,
        prompt: str,
        mode: str,
        options: Optional[CompletionOptions] = None,
        fallback: str = "",
    ) -> GenerationResult:
        options = options or CompletionOptions(timeout_s=self._default_timeout_s)
        if self._generator is None and not self._enforcer.simulation_mode:
            return GenerationResult(text=fallback, used_fallback=True, note="no content generator configured")

        prompt_tokens = estimate_tokens(prompt)
        if not self._enforcer.consume("tokens", prompt_tokens):
            raise PolicyBudgetExceeded(
                "tokens", f"{prompt_tokens} more tokens requested, {self._enforcer.tokens_remaining()} left"
            )
        if self._enforcer.simulation_mode:
            return GenerationResult(text=fallback, used_fallback=True, note="simulation")

        generator = self._generator
        text = call_with_timeout(
            lambda: generator.complete(prompt, mode, options),
            options.timeout_s,
            f"generator:{mode}",
        )
        text = text or ""
        if not self._enforcer.consume("tokens", estimate_tokens(text)):
            LOG.warning("token budget exhausted by %s response", mode)
        return GenerationResult(text=text)


def render_page(browser: BrowserRenderer, url: str, timeout_s: Optional[float]) -> RenderedPage:
    return call_with_timeout(lambda: browser.navigate(url), timeout_s, "browser")
