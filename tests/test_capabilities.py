import threading
from typing import List

import pytest

from scan_engine.capabilities import (
    GuardedGenerator,
    call_with_timeout,
    estimate_tokens,
    extract_json,
    parse_json_response,
)
from scan_engine.errors import CapabilityTimeout, PolicyBudgetExceeded
from scan_engine.models import ApplicationBlueprint, Contact
from scan_engine.policy import PolicyEnforcer


class _Generator:
    def __init__(self, reply: str = "ok") -> None:
        self.reply = reply
        self.calls = []

    def complete(self, prompt, mode, options):
        self.calls.append((prompt, mode, options))
        return self.reply


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("x") == 1
    assert estimate_tokens("a" * 36) == 10


def test_extract_json_from_fence_and_prose():
    assert extract_json('Here you go:\n```json\n{"a": 1}\n```') == '{"a": 1}'
    assert extract_json('Sure! [1, 2] hope that helps') == "[1, 2]"
    assert extract_json("plain") == "plain"


def test_parse_json_response_success():
    parsed = parse_json_response('```\n[{"name": "Grace", "role": "Recruiter"}]\n```', List[Contact])
    assert parsed.success is True
    assert parsed.data[0].name == "Grace"


def test_parse_json_response_invalid_json_never_raises():
    parsed = parse_json_response("the model rambled", ApplicationBlueprint)
    assert parsed.success is False
    assert parsed.error.startswith("Invalid JSON")
    assert parsed.raw_response == "the model rambled"


def test_parse_json_response_schema_mismatch():
    parsed = parse_json_response('[{"role": "Recruiter"}]', List[Contact])
    assert parsed.success is False
    assert parsed.error.startswith("Validation failed")
    assert "name" in parsed.error


def test_call_with_timeout_raises_capability_timeout():
    release = threading.Event()
    try:
        with pytest.raises(CapabilityTimeout, match="browser timed out"):
            call_with_timeout(lambda: release.wait(5.0), 0.05, "browser")
    finally:
        release.set()


def test_call_with_timeout_returns_value():
    assert call_with_timeout(lambda: 42, 1.0, "fast") == 42
    assert call_with_timeout(lambda: 7, None, "untimed") == 7


def test_guarded_generator_charges_prompt_and_response_tokens():
    enforcer = PolicyEnforcer()
    generator = _Generator(reply="a" * 36)

    result = GuardedGenerator(generator, enforcer).complete("b" * 72, "fast")

    assert result.text == "a" * 36
    assert result.used_fallback is False
    assert enforcer.used("tokens") == 20 + 10
    assert len(generator.calls) == 1


def test_guarded_generator_simulation_charges_but_never_calls():
    enforcer = PolicyEnforcer({"simulation_mode": True})
    generator = _Generator()

    result = GuardedGenerator(generator, enforcer).complete("b" * 72, "fast", fallback="[]")

    assert result.used_fallback is True
    assert result.text == "[]"
    assert result.note == "simulation"
    assert enforcer.used("tokens") == 20
    assert generator.calls == []


def test_guarded_generator_without_generator_returns_fallback_for_free():
    enforcer = PolicyEnforcer()
    result = GuardedGenerator(None, enforcer).complete("prompt", "fast", fallback="{}")

    assert result.used_fallback is True
    assert result.text == "{}"
    assert enforcer.used("tokens") == 0


def test_guarded_generator_refuses_when_token_budget_is_spent():
    enforcer = PolicyEnforcer({"max_tokens_per_run": 5})
    generator = _Generator()

    with pytest.raises(PolicyBudgetExceeded) as excinfo:
        GuardedGenerator(generator, enforcer).complete("b" * 72, "fast")

    assert excinfo.value.resource == "tokens"
    assert generator.calls == []
