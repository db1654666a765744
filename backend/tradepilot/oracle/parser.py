"""
Strict decoding of decision oracle output.

The oracle answers in free text that should contain a JSON object. Decoding
either yields a validated Decision or an error reason; the caller turns an
error into a fail-safe hold.
"""

import json
import re
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from tradepilot.schemas.trading import Decision, DecisionPayload


JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(frozen=True)
class DecodeResult:
    """Ok(decision) or Err(reason)."""
    decision: Optional[Decision] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.decision is not None

    @classmethod
    def success(cls, decision: Decision) -> "DecodeResult":
        return cls(decision=decision)

    @classmethod
    def failure(cls, reason: str) -> "DecodeResult":
        return cls(error=reason)

    def unwrap_or_hold(self, symbol: str, strategy_id: Optional[str] = None) -> Decision:
        if self.decision is not None:
            return self.decision
        return fail_safe_hold(symbol, self.error or "undecodable oracle response", strategy_id)


def fail_safe_hold(symbol: str, reason: str, strategy_id: Optional[str] = None) -> Decision:
    """Hold with quantity 0 and confidence 0."""
    return Decision.hold(symbol, f"Defaulting to HOLD for safety: {reason}", strategy_id)


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    location = ".".join(str(part) for part in err.get("loc", ())) or "response"
    return f"{location}: {err.get('msg', 'invalid')}"


def decode_decision(
    text: Optional[str],
    symbol: str,
    strategy_id: Optional[str] = None,
    price: Optional[float] = None,
) -> DecodeResult:
    """
    Decode oracle text into a Decision.

    Returns Err when no JSON object is present, the JSON is malformed, the
    ``action`` key is missing or unknown, or any field is out of range.
    """
    if not text or not text.strip():
        return DecodeResult.failure("empty response")

    match = JSON_OBJECT.search(text)
    if not match:
        return DecodeResult.failure("no JSON object in response")

    try:
        raw = json.loads(match.group())
    except json.JSONDecodeError as e:
        return DecodeResult.failure(f"malformed JSON: {e.msg}")

    if not isinstance(raw, dict):
        return DecodeResult.failure("response JSON is not an object")
    if "action" not in raw:
        return DecodeResult.failure("missing action")
    if isinstance(raw["action"], str):
        raw["action"] = raw["action"].strip().lower()

    try:
        payload = DecisionPayload.model_validate(raw)
    except ValidationError as e:
        return DecodeResult.failure(_first_error(e))

    return DecodeResult.success(Decision(
        action=payload.action,
        symbol=symbol,
        quantity=payload.quantity,
        reasoning=payload.reasoning,
        confidence=payload.confidence,
        signals_used=payload.signals_used,
        strategy_id=strategy_id,
        price=price,
    ))
