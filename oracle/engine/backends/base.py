"""
Backend adapter: prompt construction, response parsing, and the uniform
``analyze`` contract.

An adapter returns either a Pick or a BackendFailure and never raises past
its own boundary, so the orchestrator needs no per-backend error handling.
"""

from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from oracle.core.logging import get_logger
from oracle.engine.backends.config import BackendConfig
from oracle.engine.backends.transport import ChatTransport, Transport, TransportError
from oracle.engine.schemas import (
    BackendFailure,
    BackendPickPayload,
    BackendTier,
    Calibration,
    Direction,
    FailureReason,
    MarketSnapshot,
    Pick,
)


logger = get_logger("engine.backends")

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@runtime_checkable
class PredictionBackend(Protocol):
    """Capability every backend exposes to the orchestrator."""

    backend_id: str
    tier: BackendTier
    timeout_seconds: float

    async def analyze(
        self,
        symbol: str,
        snapshot: MarketSnapshot,
        calibration: Calibration | None = None,
    ) -> Pick | BackendFailure:
        ...


class PickParseError(ValueError):
    """Response text is not a usable pick."""

    def __init__(self, reason: FailureReason, message: str):
        super().__init__(message)
        self.reason = reason


# =============================================================================
# Prompt
# =============================================================================


def _fmt_money(value: float | None) -> str:
    return f"${value:,.2f}" if value is not None else "N/A"


def _fmt_number(value: float | int | None, suffix: str = "") -> str:
    if value is None:
        return "N/A"
    if isinstance(value, float):
        return f"{value:,.2f}{suffix}"
    return f"{value:,}{suffix}"


def build_prompt(snapshot: MarketSnapshot, calibration: Calibration | None = None) -> str:
    """Build the analysis prompt for one symbol."""
    name = snapshot.company_name or snapshot.symbol
    lines = [
        f"You are a professional stock analyst for Market Oracle. Analyze {snapshot.symbol} "
        f"({name}) and provide a pick recommendation.",
        "",
        "## MARKET DATA",
        f"- Sector: {snapshot.sector}",
        f"- Current Price: {_fmt_money(snapshot.price)}",
        f"- Day Change: {_fmt_number(snapshot.change_pct, '%')}",
        f"- Volume: {_fmt_number(snapshot.volume)} (avg {_fmt_number(snapshot.avg_volume)})",
        f"- Market Cap: {_fmt_money(snapshot.market_cap)}",
        f"- P/E Ratio: {_fmt_number(snapshot.pe_ratio)} (forward {_fmt_number(snapshot.forward_pe)})",
        f"- 52-Week Range: {_fmt_money(snapshot.low_52w)} - {_fmt_money(snapshot.high_52w)}",
        f"- SMA 50: {_fmt_money(snapshot.sma_50)}",
        f"- SMA 200: {_fmt_money(snapshot.sma_200)}",
    ]
    for key, value in sorted(snapshot.technicals.items()):
        lines.append(f"- {key}: {value}")

    if calibration is not None:
        lines += [
            "",
            "## YOUR CALIBRATION NOTES (Based on past performance)",
            f"- Historical win rate: {calibration.win_rate * 100:.0f}% over {calibration.total_picks} picks",
            f"- Best sectors for you: {', '.join(calibration.best_sectors) or 'Still learning'}",
            f"- Sectors to be cautious in: {', '.join(calibration.worst_sectors) or 'Still learning'}",
            f"- Factors that have misled you: {', '.join(calibration.avoid_factors) or 'None yet'}",
            f"- Adjustments to make: {'; '.join(calibration.adjustments[:3]) or 'None yet'}",
        ]

    lines += [
        "",
        "## YOUR TASK",
        "Analyze this stock and provide a recommendation. "
        "You MUST respond in this EXACT JSON format:",
        "",
        RESPONSE_CONTRACT,
        "",
        "IMPORTANT:",
        "- Your confidence should reflect your actual certainty (don't be overconfident)",
        "- Include at least 3 factor assessments",
        "- Stop loss should typically be 5-10% from entry, below it for UP and above it for DOWN",
        "- Target should reflect your timeframe (1W: 2-5%, 2W: 5-10%, 1M: 10-20%)",
        '- If you don\'t have a strong view, use "HOLD" with lower confidence',
        "",
        "Respond ONLY with the JSON object, no additional text or markdown.",
    ]
    return "\n".join(lines)


RESPONSE_CONTRACT = """{
  "direction": "UP" | "DOWN" | "HOLD",
  "confidence": <number 0-100>,
  "thesis": "<one sentence summary of your thesis>",
  "full_reasoning": "<detailed 2-3 paragraph analysis>",
  "target_price": <number>,
  "stop_loss": <number>,
  "timeframe": "1W" | "2W" | "1M",
  "factor_assessments": [
    {
      "factorId": "pe_ratio" | "volume_trend" | "sma_50" | "news_sentiment" | "price_momentum_1m",
      "factorName": "<human readable name>",
      "value": "<the value you observed>",
      "interpretation": "BULLISH" | "BEARISH" | "NEUTRAL",
      "confidence": <0-100>,
      "reasoning": "<why this factor matters for this pick>"
    }
  ],
  "key_bullish_factors": ["<factor>"],
  "key_bearish_factors": ["<factor>"],
  "risks": ["<risk>"],
  "catalysts": ["<upcoming catalyst>"]
}"""


# =============================================================================
# Parsing
# =============================================================================


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text.strip()).strip()


def parse_pick_payload(text: str, entry_price: float) -> BackendPickPayload:
    """
    Parse and validate raw backend text.

    Raises:
        PickParseError: with reason PARSE for malformed JSON and VALIDATION
            for schema or price-consistency problems.
    """
    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise PickParseError(FailureReason.PARSE, f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise PickParseError(FailureReason.PARSE, "Response is not a JSON object")

    try:
        payload = BackendPickPayload.model_validate(data)
    except ValidationError as e:
        raise PickParseError(
            FailureReason.VALIDATION, f"{e.error_count()} validation error(s): {e.errors()[0]['msg']}"
        ) from e

    if payload.direction == Direction.UP and payload.target_price <= entry_price:
        raise PickParseError(FailureReason.VALIDATION, "UP pick with target at or below entry")
    if payload.direction == Direction.DOWN and payload.target_price >= entry_price:
        raise PickParseError(FailureReason.VALIDATION, "DOWN pick with target at or above entry")
    if payload.direction == Direction.UP and payload.stop_loss >= entry_price:
        raise PickParseError(FailureReason.VALIDATION, "UP pick with stop loss at or above entry")
    if payload.direction == Direction.DOWN and payload.stop_loss <= entry_price:
        raise PickParseError(FailureReason.VALIDATION, "DOWN pick with stop loss at or below entry")
    return payload


def payload_to_pick(
    payload: BackendPickPayload,
    backend_id: str,
    snapshot: MarketSnapshot,
    now: datetime | None = None,
) -> Pick:
    """Stamp entry price, horizon and identity onto a validated payload."""
    created_at = now or datetime.now(UTC)
    return Pick(
        backend_id=backend_id,
        symbol=snapshot.symbol,
        company_name=snapshot.company_name,
        sector=snapshot.sector or "Unknown",
        direction=payload.direction,
        confidence=payload.confidence,
        timeframe=payload.timeframe,
        entry_price=snapshot.price,
        target_price=payload.target_price,
        stop_loss=payload.stop_loss,
        thesis=payload.thesis,
        full_reasoning=payload.full_reasoning,
        factor_assessments=payload.factor_assessments,
        bullish_factors=payload.key_bullish_factors,
        bearish_factors=payload.key_bearish_factors,
        risks=payload.risks,
        catalysts=payload.catalysts,
        created_at=created_at,
        expires_at=created_at + payload.timeframe.horizon,
    )


# =============================================================================
# Adapter
# =============================================================================


class LLMBackendAdapter:
    """Adapter for a chat-completions backend."""

    def __init__(self, config: BackendConfig, transport: Transport | None = None):
        self.config = config
        self.transport = transport or ChatTransport(config)

    @property
    def backend_id(self) -> str:
        return self.config.backend_id

    @property
    def tier(self) -> BackendTier:
        return self.config.tier

    @property
    def timeout_seconds(self) -> float:
        return self.config.timeout_seconds

    def _fail(self, reason: FailureReason, message: str) -> BackendFailure:
        logger.warning(f"{self.backend_id} failed ({reason.value}): {message}")
        return BackendFailure(backend_id=self.backend_id, reason=reason, message=message)

    async def analyze(
        self,
        symbol: str,
        snapshot: MarketSnapshot,
        calibration: Calibration | None = None,
    ) -> Pick | BackendFailure:
        if not self.config.enabled:
            return self._fail(FailureReason.DISABLED, "Backend is disabled")

        prompt = build_prompt(snapshot, calibration)
        try:
            raw = await self.transport.complete(prompt)
        except TransportError as e:
            return self._fail(e.reason, e.message)
        except TimeoutError as e:
            return self._fail(FailureReason.TIMEOUT, str(e) or "Timed out")
        except Exception as e:
            logger.exception(f"Unexpected transport error for {self.backend_id}")
            return self._fail(FailureReason.TRANSPORT, f"{type(e).__name__}: {e}")

        try:
            payload = parse_pick_payload(raw, snapshot.price)
        except PickParseError as e:
            logger.debug(f"Raw {self.backend_id} response: {raw[:500]}")
            return self._fail(e.reason, str(e))

        pick = payload_to_pick(payload, self.backend_id, snapshot)
        logger.info(
            f"{self.backend_id} pick for {symbol}: {pick.direction.value} "
            f"({pick.confidence}%) target={pick.target_price} stop={pick.stop_loss}"
        )
        return pick


def build_adapters(
    backends,
    transports: dict[str, Transport] | None = None,
) -> list[LLMBackendAdapter]:
    """Adapters for the enabled entries of a BackendSet."""
    transports = transports or {}
    return [
        LLMBackendAdapter(config, transports.get(config.backend_id))
        for config in backends.enabled
    ]
