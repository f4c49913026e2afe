from __future__ import annotations

from dataclasses import fields
from datetime import timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from dateutil import parser as date_parser
from loguru import logger

from app.domain import (
    CLAIM_MARKER,
    DRAW_INDEX,
    TIE_CODE,
    ZERO,
    EventSource,
    MarketMeta,
    TradeEvent,
    TradeKind,
)

_BPS = Decimal("10000")

_SIDE_TO_INDEX = {"A": 0, "B": 1}
_DRAW_MARKERS = {"C", "DRAW", "TIE"}


class RejectedRow(ValueError):
    """Raised internally when a raw record cannot become a ledger row."""


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _parse_decimal(value: Any, field_name: str) -> Decimal:
    if value is None or (isinstance(value, str) and not value.strip()):
        return ZERO
    if isinstance(value, float):
        # Floats have already lost precision upstream; go through repr once.
        value = repr(value)
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise RejectedRow(f"{field_name} is not a decimal: {value!r}") from exc
    if not parsed.is_finite():
        raise RejectedRow(f"{field_name} is not finite: {value!r}")
    return parsed


def _parse_optional_decimal(value: Any, field_name: str) -> Decimal | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return _parse_decimal(value, field_name)


def _parse_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(Decimal(str(value)))
        except (InvalidOperation, ValueError):
            return None


def _parse_epoch(value: Any) -> int | None:
    """Epoch seconds from an integer-like value or an ISO-8601 string."""

    parsed = _parse_int(value)
    if parsed is not None or not isinstance(value, str):
        return parsed
    try:
        moment = date_parser.isoparse(value.strip())
    except (ValueError, TypeError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


def _parse_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in {"true", "1", "yes", "t"}:
        return True
    if text in {"false", "0", "no", "f", ""}:
        return False
    return None


def _subject_of(raw: dict[str, Any], fallback: str | None) -> str | None:
    user = raw.get("user")
    if isinstance(user, dict):
        user = user.get("id")
    candidate = user or raw.get("subject") or raw.get("userAddress") or fallback
    if not candidate:
        return None
    return str(candidate).strip().lower() or None


def resolve_outcome(raw: dict[str, Any]) -> tuple[int, str] | None:
    """Map a trade's outcome to ``(index, label)``.

    Explicit ``outcomeIndex`` wins, then the legacy binary side (A/B), then the
    legacy three-way marker (C/DRAW/TIE), which becomes index 2 labelled DRAW.
    """

    explicit = _parse_int(_first(raw, "outcomeIndex", "outcome_index"))
    if explicit is not None and explicit >= 0:
        label = _first(raw, "outcomeCode", "outcome", "side")
        return explicit, str(label).upper() if label is not None else str(explicit)

    side = _first(raw, "side")
    if side is None:
        return None
    marker = str(side).strip().upper()
    if marker in _SIDE_TO_INDEX:
        return _SIDE_TO_INDEX[marker], marker
    if marker in _DRAW_MARKERS:
        return DRAW_INDEX, "DRAW"
    return None


def _prefixed_id(raw_id: str, source: EventSource) -> str:
    prefix = source.id_prefix
    return raw_id if raw_id.startswith(prefix) else f"{prefix}{raw_id}"


def _derive_shares(kind: TradeKind, raw: dict[str, Any], amount: Decimal, avg_bps: int | None) -> Decimal | None:
    explicit = _parse_optional_decimal(
        _first(raw, "sharesDec", "sharesOutDec", "sharesInDec", "shares", "sharesOut", "sharesIn"),
        "shares",
    )
    if explicit is not None:
        return explicit
    if kind is TradeKind.CLAIM or not avg_bps or avg_bps <= 0 or amount <= 0:
        return None
    return amount * _BPS / Decimal(avg_bps)


def _build_trade_fields(raw: dict[str, Any], kind: TradeKind) -> dict[str, Any]:
    spot = _parse_int(_first(raw, "spotPriceBps", "priceBps"))
    avg = _parse_int(_first(raw, "avgPriceBps", "priceBps"))
    values = {
        "gross_in": _parse_decimal(_first(raw, "grossInDec"), "grossInDec"),
        "gross_out": _parse_decimal(_first(raw, "grossOutDec"), "grossOutDec"),
        "fee": _parse_decimal(_first(raw, "feeDec"), "feeDec"),
        "net_stake": _parse_decimal(_first(raw, "netStakeDec"), "netStakeDec"),
        "net_out": _parse_decimal(_first(raw, "netOutDec"), "netOutDec"),
        "cost_basis_closed": _parse_decimal(_first(raw, "costBasisClosedDec"), "costBasisClosedDec"),
        "realized_pnl": _parse_decimal(_first(raw, "realizedPnlDec"), "realizedPnlDec"),
        "spot_price_bps": spot,
        "avg_price_bps": avg,
    }
    basis = values["net_stake"] if kind is TradeKind.BUY else values["gross_out"]
    values["shares"] = _derive_shares(kind, raw, basis, avg)
    return values


def _build_stake_fields(raw: dict[str, Any]) -> dict[str, Any]:
    price = _parse_int(_first(raw, "priceBps", "spotPriceBps", "avgPriceBps"))
    net_stake = _parse_decimal(_first(raw, "amountDec"), "amountDec")
    return {
        "gross_in": _parse_decimal(_first(raw, "grossAmountDec", "grossAmount"), "grossAmount"),
        "fee": _parse_decimal(_first(raw, "feeDec", "fee"), "fee"),
        "net_stake": net_stake,
        "spot_price_bps": price,
        "avg_price_bps": price,
        "shares": _derive_shares(TradeKind.BUY, raw, net_stake, price),
    }


def _build_claim_fields(raw: dict[str, Any]) -> dict[str, Any]:
    amount = _parse_decimal(_first(raw, "amountDec", "netOutDec"), "amountDec")
    return {"gross_out": amount, "net_out": amount}


def _kind_for(raw: dict[str, Any], source: EventSource) -> TradeKind:
    if source is EventSource.CLAIM:
        return TradeKind.CLAIM
    if source is EventSource.STAKE:
        return TradeKind.BUY
    raw_type = str(raw.get("type") or "").strip().upper()
    try:
        kind = TradeKind(raw_type)
    except ValueError as exc:
        raise RejectedRow(f"unknown trade type {raw_type!r}") from exc
    if kind is TradeKind.CLAIM:
        raise RejectedRow("trade rows cannot be claims")
    return kind


def normalize_event(
    raw: dict[str, Any],
    source: EventSource | str,
    *,
    subject: str | None = None,
) -> TradeEvent | None:
    """Turn one indexer record into a ledger row, or ``None`` when it is unusable.

    Rejections are logged and never raised; ingestion continues with the next row.
    """

    source = EventSource(source)
    raw_id = raw.get("id")
    try:
        if not raw_id:
            raise RejectedRow("missing id")

        resolved_subject = _subject_of(raw, subject)
        if not resolved_subject:
            raise RejectedRow("missing subject")

        game = raw.get("game") if isinstance(raw.get("game"), dict) else {}
        market_id = _first(game, "id") or _first(raw, "gameId", "marketId")
        if not market_id:
            raise RejectedRow("missing market id")

        timestamp = _parse_epoch(raw.get("timestamp"))
        if timestamp is None:
            raise RejectedRow("missing timestamp")

        kind = _kind_for(raw, source)
        if kind is TradeKind.CLAIM:
            outcome_index, outcome_code = None, CLAIM_MARKER
            amounts = _build_claim_fields(raw)
        else:
            outcome = resolve_outcome(raw)
            if outcome is None:
                raise RejectedRow(f"unresolvable outcome (side={raw.get('side')!r})")
            outcome_index, outcome_code = outcome
            if source is EventSource.STAKE:
                amounts = _build_stake_fields(raw)
            else:
                amounts = _build_trade_fields(raw, kind)

        league = _first(game, "league") or _first(raw, "league")
        return TradeEvent(
            id=_prefixed_id(str(raw_id), source),
            subject=resolved_subject,
            kind=kind,
            outcome_index=outcome_index,
            outcome_code=outcome_code,
            timestamp=timestamp,
            market_id=str(market_id),
            league=str(league).upper() if league else None,
            source=source,
            tx_hash=_first(raw, "txHash", "transactionHash"),
            **amounts,
        )
    except RejectedRow as exc:
        logger.warning("Rejected {} row {}: {}", source.value, raw_id, exc)
        return None


def _winner_from(game: dict[str, Any], outcome_count: int | None) -> tuple[int | None, str | None]:
    explicit = _parse_int(_first(game, "winningOutcomeIndex", "winnerOutcomeIndex"))
    side = str(_first(game, "winnerSide") or "").strip().upper()
    team_code = str(_first(game, "winnerTeamCode") or "").strip().upper()
    binary = (outcome_count or 2) <= 2

    if explicit is not None:
        if binary and explicit == DRAW_INDEX:
            return DRAW_INDEX, TIE_CODE
        return explicit, team_code or side or None
    if team_code in {"TIE", "DRAW"} or side in _DRAW_MARKERS:
        if binary:
            return DRAW_INDEX, TIE_CODE
        return DRAW_INDEX, team_code or "DRAW"
    if side in _SIDE_TO_INDEX:
        return _SIDE_TO_INDEX[side], team_code or side
    return None, None


def normalize_market(game: dict[str, Any]) -> MarketMeta | None:
    market_id = _first(game, "id", "gameId", "marketId")
    if not market_id:
        return None

    outcomes = game.get("outcomes")
    outcome_count = _parse_int(_first(game, "outcomeCount"))
    if outcome_count is None and isinstance(outcomes, list) and outcomes:
        outcome_count = len(outcomes)

    is_final = bool(_parse_bool(_first(game, "isFinal", "is_final")))
    winning_index, winner_code = (None, None)
    if is_final:
        winning_index, winner_code = _winner_from(game, outcome_count)

    league = _first(game, "league")
    return MarketMeta(
        market_id=str(market_id),
        league=str(league).upper() if league else None,
        lock_time=_parse_epoch(_first(game, "lockTime", "lock_time")),
        is_final=is_final,
        outcome_count=outcome_count,
        winning_outcome_index=winning_index,
        winner_code=winner_code,
        team_a_code=_first(game, "teamACode"),
        team_b_code=_first(game, "teamBCode"),
        team_a_name=_first(game, "teamAName"),
        team_b_name=_first(game, "teamBName"),
        question=_first(game, "question", "title"),
    )


def merge_market_meta(existing: MarketMeta, incoming: MarketMeta) -> MarketMeta:
    """Merge two sightings of one market.

    Every field keeps its first non-null value. ``is_final`` only moves from
    False to True, and the winner fields follow the first-non-null rule, so a
    resolved market never changes its result.
    """

    if existing.market_id != incoming.market_id:
        raise ValueError(
            f"cannot merge market {incoming.market_id} into {existing.market_id}"
        )

    merged = MarketMeta(market_id=existing.market_id)
    for item in fields(MarketMeta):
        if item.name in {"market_id", "is_final"}:
            continue
        current = getattr(existing, item.name)
        setattr(merged, item.name, current if current is not None else getattr(incoming, item.name))
    merged.is_final = existing.is_final or incoming.is_final

    if existing.winning_outcome_index is not None and (
        incoming.winning_outcome_index not in (None, existing.winning_outcome_index)
    ):
        logger.warning(
            "Ignoring conflicting winner for market {}: kept {}, saw {}",
            existing.market_id,
            existing.winning_outcome_index,
            incoming.winning_outcome_index,
        )
    return merged


def markets_from_raw(rows: list[dict[str, Any]]) -> dict[str, MarketMeta]:
    """Collect merged market metadata from the ``game`` objects nested in raw rows."""

    markets: dict[str, MarketMeta] = {}
    for row in rows:
        game = row.get("game")
        if not isinstance(game, dict):
            continue
        meta = normalize_market(game)
        if meta is None:
            continue
        previous = markets.get(meta.market_id)
        markets[meta.market_id] = meta if previous is None else merge_market_meta(previous, meta)
    return markets
