"""
Anthropic decision oracle - asks Claude for a buy/sell/hold decision.
"""
from typing import Optional

from anthropic import AsyncAnthropic
from loguru import logger

from tradepilot.core.config import OracleSettings, get_settings
from tradepilot.oracle.base import DecisionOracle
from tradepilot.schemas.trading import DecisionRequest, PositionSummary


DEFAULT_SYSTEM_PROMPT = """You are an expert trading AI managing multiple concurrent strategies. Your responsibilities:

1. MEMORY: Track why each position was opened and which strategy owns it
2. ISOLATION: Never close a position opened by a different strategy
3. SIGNALS: Analyze all available data sources before making decisions
4. RISK: Respect stop losses, take profits, and position sizing limits
5. REASONING: Always explain your decisions clearly

When analyzing trades:
- Check existing positions and their opening context
- Consider signals from all enabled data sources
- Ensure strategy isolation (don't interfere with other strategies' positions)
- Apply appropriate risk management for the strategy type
- Document your reasoning for future reference"""


def _format_owned(positions: list) -> str:
    lines = [
        f"- {p.symbol}: {p.qty} shares @ ${p.entry_price:.2f} (Reason: {p.open_reason})"
        for p in positions
    ]
    return "\n".join(lines) or "None"


def _format_symbol_positions(positions: list) -> str:
    lines = [
        f"- Strategy: {p.strategy_name}, {p.qty} shares @ ${p.entry_price:.2f} (Reason: {p.open_reason})"
        for p in positions
    ]
    return "\n".join(lines) or "None"


def build_prompt(request: DecisionRequest) -> str:
    """Render the decision request as the user prompt."""
    signals = "\n".join(
        f"- {s.source}: {s.signal} (strength: {s.strength:.0f}%)"
        for s in request.available_signals
    ) or "No signals available"

    return f"""Analyze this trading opportunity:

Strategy: {request.strategy_name} ({request.strategy_type.value})
Symbol: {request.symbol}
Current Price: ${request.current_price:.2f}
Account Balance: ${request.account_balance:,.2f}
Strategy Allocation: {request.allocation_pct:.0f}% (${request.allocation:,.2f})

Existing Positions for this Strategy:
{_format_owned(request.owned_positions)}

All Positions for {request.symbol}:
{_format_symbol_positions(request.all_symbol_positions)}

Available Signals:
{signals}

Has Position Already: {str(request.has_position).lower()}

Decide: BUY, SELL, or HOLD. Format your response as JSON:
{{
  "action": "buy|sell|hold",
  "quantity": <number>,
  "reasoning": "<detailed explanation>",
  "confidence": <0-100>,
  "signals_used": ["<source1>", "<source2>"]
}}"""


class AnthropicOracle(DecisionOracle):
    """
    Decision oracle backed by the Anthropic Messages API.

    Transport and API errors propagate; the decision pipeline turns them
    into a fail-safe hold.
    """

    def __init__(
        self,
        settings: Optional[OracleSettings] = None,
        client: Optional[AsyncAnthropic] = None,
    ):
        self.settings = settings or get_settings().oracle
        self.client = client or AsyncAnthropic(api_key=self.settings.api_key)
        self.model = self.settings.model
        self.system_prompt = self.settings.system_prompt or DEFAULT_SYSTEM_PROMPT

    async def complete(self, request: DecisionRequest) -> str:
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=self.settings.max_tokens,
            system=self.system_prompt,
            messages=[{"role": "user", "content": build_prompt(request)}],
        )
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "text") == "text"
        )
        logger.debug(f"Oracle replied for {request.symbol} ({request.strategy_id}): {text[:200]}")
        return text
