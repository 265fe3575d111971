"""ECHONET Lite frames for the low-voltage smart electric energy meter class."""

import logging
from collections.abc import Iterator
from datetime import datetime

from hems_exporter.backends.base import TelemetrySample, create_sample

logger = logging.getLogger(__name__)

# ── ECHONET Lite constants ───────────────────────────────────────────

EHD = bytes.fromhex("1081")
CONTROLLER_EOJ = bytes.fromhex("05FF01")
SMART_METER_EOJ = "028801"
ESV_GET = 0x62
ESV_GET_RES = "72"

EPC_SIGNIFICANT_DIGITS = "D7"
EPC_UNIT = "E1"
EPC_CUMULATIVE_ENERGY = "E0"
EPC_INSTANTANEOUS_POWER = "E7"
EPC_INSTANTANEOUS_CURRENT = "E8"

REQUESTED_EPCS = (
    EPC_SIGNIFICANT_DIGITS,
    EPC_UNIT,
    EPC_CUMULATIVE_ENERGY,
    EPC_INSTANTANEOUS_POWER,
    EPC_INSTANTANEOUS_CURRENT,
)

UNIT_MULTIPLIERS: dict[str, float] = {
    "00": 1.0,
    "01": 0.1,
    "02": 0.01,
    "03": 0.001,
    "04": 0.0001,
    "0A": 10.0,
    "0B": 100.0,
    "0C": 1000.0,
    "0D": 10000.0,
}

# ERXUDP <sender> <dest> <rport> <lport> <senderlla> <secured> <datalen> <data>
ERXUDP_FIELD_COUNT = 9
# datalen of a Get_Res carrying all five requested properties (36 bytes)
EXPECTED_DATA_LENGTH = "0024"

# hex offsets inside the ECHONET Lite payload
_SEOJ = slice(8, 14)
_ESV = slice(20, 22)
_PROPERTIES_START = 24


# ── Request ──────────────────────────────────────────────────────────


def build_get_request(transaction_id: int = 1) -> bytes:
    """Build a Get request for the properties decoded by :func:`decode_payload`."""
    frame = bytearray(EHD)
    frame += (transaction_id & 0xFFFF).to_bytes(2, "big")
    frame += CONTROLLER_EOJ
    frame += bytes.fromhex(SMART_METER_EOJ)
    frame.append(ESV_GET)
    frame.append(len(REQUESTED_EPCS))
    for epc in REQUESTED_EPCS:
        frame += bytes.fromhex(epc)
        frame.append(0)
    return bytes(frame)


# ── Response ─────────────────────────────────────────────────────────


def iter_properties(payload: str, start: int = _PROPERTIES_START) -> Iterator[tuple[str, str]]:
    """Yield ``(epc, edt)`` hex pairs walked from ``start``.

    Stops early, with a warning, on a length byte that cannot be parsed or
    that runs past the end of the payload.
    """
    pos = start
    while pos < len(payload):
        epc = payload[pos : pos + 2]
        pdc = payload[pos + 2 : pos + 4]
        try:
            length = int(pdc, 16)
        except ValueError:
            logger.warning("Invalid PDC %r for EPC %s, stopping property walk", pdc, epc)
            return
        end = pos + 4 + length * 2
        if end > len(payload):
            logger.warning(
                "Property %s declares %d bytes but only %d remain",
                epc,
                length,
                (len(payload) - pos - 4) // 2,
            )
            return
        edt = payload[pos + 4 : end]
        logger.debug("%s / %s / %s", epc, pdc, edt)
        yield epc, edt
        pos = end


def _parse_unsigned(epc: str, edt: str) -> int:
    try:
        return int(edt, 16)
    except ValueError:
        logger.warning("data %s is invalid: %s", epc, edt)
        return 0


def _parse_signed(epc: str, edt: str) -> int:
    value = _parse_unsigned(epc, edt)
    bits = len(edt) * 4
    if bits and value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def decode_payload(payload: str, timestamp: datetime) -> TelemetrySample | None:
    """Decode an ECHONET Lite Get_Res from the smart meter.

    Returns None unless the frame comes from the smart meter object with a
    Get_Res service code. Individual fields that fail to parse stay at zero.
    """
    seoj = payload[_SEOJ]
    esv = payload[_ESV]
    if seoj != SMART_METER_EOJ or esv != ESV_GET_RES:
        logger.warning("data is invalid, seoj:%s, ESV:%s", seoj, esv)
        return None

    significant_digits = 0
    multiplier = 1.0
    cumulative_raw = 0
    power = 0
    r_phase = 0
    t_phase = 0

    for epc, edt in iter_properties(payload):
        if epc == EPC_SIGNIFICANT_DIGITS:
            significant_digits = _parse_unsigned(epc, edt)
        elif epc == EPC_UNIT:
            if edt in UNIT_MULTIPLIERS:
                multiplier = UNIT_MULTIPLIERS[edt]
            else:
                logger.warning("data %s is invalid: %s", epc, edt)
        elif epc == EPC_CUMULATIVE_ENERGY:
            cumulative_raw = _parse_unsigned(epc, edt)
        elif epc == EPC_INSTANTANEOUS_POWER:
            power = _parse_signed(epc, edt)
        elif epc == EPC_INSTANTANEOUS_CURRENT:
            half = len(edt) // 2
            r_phase = _parse_signed(epc, edt[:half])
            t_phase = _parse_signed(epc, edt[half:])

    sample = create_sample(timestamp, cumulative_raw * multiplier, power, r_phase, t_phase)
    logger.debug("sigdigit: %d", significant_digits)
    logger.debug("WH: %s [kWh]", sample.cumulative_energy)
    logger.debug("W: %s [W]", sample.instantaneous_power)
    logger.debug(
        "A: %s [A], R phase: %s [A], T phase: %s [A]",
        sample.current,
        sample.r_phase_current,
        sample.t_phase_current,
    )
    logger.debug("PF: %s [%%]", sample.power_factor)
    return sample


def decode_erxudp(line: str, timestamp: datetime) -> TelemetrySample | None:
    """Decode the ERXUDP line returned by SKSENDTO, or return None if it is unusable."""
    fields = line.split(" ")
    if len(fields) != ERXUDP_FIELD_COUNT:
        logger.warning("data length is invalid: %d", len(fields))
        return None
    if fields[7] != EXPECTED_DATA_LENGTH:
        logger.warning("%s is not %s. invalid data?", fields[7], EXPECTED_DATA_LENGTH)
        return None
    return decode_payload(fields[8], timestamp)
