from __future__ import annotations

from dataclasses import dataclass

from algo_engine.errors import UnknownInstrument


@dataclass(frozen=True)
class InstrumentRef:
    instrument_id: str
    symbol: str
    name: str
    exchange: str
    segment: str
    broker_token: str
    lot_size: int = 1
    tick_size: float = 0.05


PREDEFINED_INSTRUMENTS: dict[str, InstrumentRef] = {
    "nifty-50-idx-nse": InstrumentRef(
        instrument_id="nifty-50-idx-nse",
        symbol="NIFTY 50",
        name="NIFTY 50",
        exchange="NSE",
        segment="IDX",
        broker_token="NIFTY50",
    ),
    "nifty-bank-idx-nse": InstrumentRef(
        instrument_id="nifty-bank-idx-nse",
        symbol="NIFTY BANK",
        name="NIFTY BANK",
        exchange="NSE",
        segment="IDX",
        broker_token="BANKNIFTY",
    ),
    "nifty-fin-service-idx-nse": InstrumentRef(
        instrument_id="nifty-fin-service-idx-nse",
        symbol="NIFTY FIN SERVICE",
        name="NIFTY FIN SERVICE",
        exchange="NSE",
        segment="IDX",
        broker_token="FINNIFTY",
    ),
    "sensex-idx-bse": InstrumentRef(
        instrument_id="sensex-idx-bse",
        symbol="SENSEX",
        name="SENSEX",
        exchange="BSE",
        segment="IDX",
        broker_token="SENSEX",
    ),
}


def _parse_equity_id(instrument_id: str) -> InstrumentRef:
    # SYMBOL-EXCHANGE-EQUITY or SYMBOL-EQUITY-<series>-EXCHANGE
    parts = instrument_id.split("-")
    if len(parts) == 3:
        symbol, exchange, segment = parts
    elif len(parts) == 4:
        symbol, segment, exchange = parts[0], parts[1], parts[3]
    else:
        raise UnknownInstrument(f"invalid instrument format: {instrument_id}")
    return InstrumentRef(
        instrument_id=instrument_id,
        symbol=symbol,
        name=symbol,
        exchange=exchange,
        segment=segment,
        broker_token=symbol,
    )


def resolve_instrument(instrument_id: str | None, symbol: str | None = None) -> InstrumentRef:
    if not instrument_id or not instrument_id.strip():
        raise UnknownInstrument("instrument is required")
    key = instrument_id.strip()
    predefined = PREDEFINED_INSTRUMENTS.get(key)
    if predefined is not None:
        return predefined
    if "-EQUITY" in key:
        return _parse_equity_id(key)
    if symbol and symbol.strip():
        return InstrumentRef(
            instrument_id=key,
            symbol=symbol.strip(),
            name=symbol.strip(),
            exchange="NSE",
            segment="EQUITY",
            broker_token=key,
        )
    raise UnknownInstrument(f"instrument not found: {instrument_id}")
