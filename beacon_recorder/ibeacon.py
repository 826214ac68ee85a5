"""iBeacon frame decoding and acceptance filtering."""

import logging
import re
from typing import Dict, Iterator, Optional

from .models import (
    RSSI_THRESHOLD_MAX,
    RSSI_THRESHOLD_MIN,
    BeaconAdvertisement,
    FilterCriteria,
)

log = logging.getLogger(__name__)

APPLE_COMPANY_ID = 0x004C
IBEACON_TYPE = 0x02
IBEACON_LENGTH = 0x15

# company id (2) + type/length (2) + uuid (16) + major (2) + minor (2) + tx (1)
IBEACON_FRAME_LEN = 25

# Path loss exponents for distance estimation
_ENV_PATH_LOSS = {
    "free_space": 2.0,
    "outdoor": 2.2,
    "indoor": 3.0,
}

# iBeacon measured power convention: -59 dBm at 1 m for 0 dBm TX
_DEFAULT_REF_OFFSET = 59

_UUID_RE = re.compile(
    r"^[0-9A-F]{8}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{12}$",
    re.IGNORECASE)


def _uuid_from_bytes(raw: bytes) -> str:
    h = raw.hex().upper()
    return f"{h[0:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"


def decode_ibeacon(data, rssi: int) -> Optional[BeaconAdvertisement]:
    """Decode an iBeacon manufacturer-data frame.

    *data* is the full manufacturer-specific payload including the
    little-endian company id:

        4C 00 | 02 15 | uuid (16) | major (2, BE) | minor (2, BE) | tx power

    Returns None for anything that is not an iBeacon frame.  Extra trailing
    bytes are tolerated.
    """
    try:
        frame = bytes(data)
    except (TypeError, ValueError):
        return None
    if len(frame) < IBEACON_FRAME_LEN:
        return None
    if int.from_bytes(frame[0:2], "little") != APPLE_COMPANY_ID:
        return None
    if frame[2] != IBEACON_TYPE or frame[3] != IBEACON_LENGTH:
        return None

    return BeaconAdvertisement(
        uuid=_uuid_from_bytes(frame[4:20]),
        major=int.from_bytes(frame[20:22], "big"),
        minor=int.from_bytes(frame[22:24], "big"),
        rssi=rssi,
        tx_power=int.from_bytes(frame[24:25], "big", signed=True),
    )


def manufacturer_frames(manufacturer_data: Optional[Dict[int, bytes]]
                        ) -> Iterator[bytes]:
    """Re-attach company ids to bleak's ``{company_id: payload}`` mapping.

    Bleak strips the 2-byte company id off each manufacturer-specific
    record; the decoder expects it in place.
    """
    if not manufacturer_data:
        return
    for company_id, payload in manufacturer_data.items():
        if not 0 <= company_id <= 0xFFFF:
            log.debug("Skipping manufacturer record with company id %r",
                      company_id)
            continue
        yield company_id.to_bytes(2, "little") + bytes(payload)


def accept(adv: BeaconAdvertisement, criteria: FilterCriteria) -> bool:
    """Return True if *adv* matches the target UUID and is strong enough.

    The UUID comparison ignores case; the RSSI threshold is inclusive.
    """
    if adv.uuid.upper() != criteria.target_uuid.upper():
        return False
    return adv.rssi >= criteria.rssi_threshold


def is_valid_uuid(value: str) -> bool:
    return isinstance(value, str) and _UUID_RE.fullmatch(value) is not None


def format_uuid(value: str) -> str:
    """Normalize a UUID string to uppercase 8-4-4-4-12 form.

    Accepts input with or without hyphens.  Strings that do not hold
    exactly 32 characters once hyphens are removed are only upper-cased,
    so validation can reject them afterwards.
    """
    s = value.strip()
    compact = s.replace("-", "").upper()
    if len(compact) == 32:
        return (f"{compact[0:8]}-{compact[8:12]}-{compact[12:16]}-"
                f"{compact[16:20]}-{compact[20:32]}")
    return s.upper()


def validate_criteria(criteria: FilterCriteria) -> FilterCriteria:
    """Check filter criteria before they are stored or used.

    Returns the criteria with the UUID in canonical form, or raises
    ValueError.
    """
    if not is_valid_uuid(criteria.target_uuid):
        raise ValueError(
            f"Invalid UUID '{criteria.target_uuid}'. Expected format: "
            "XXXXXXXX-XXXX-XXXX-XXXX-XXXXXXXXXXXX (hex digits)")
    threshold = criteria.rssi_threshold
    if isinstance(threshold, bool) or not isinstance(threshold, int):
        raise ValueError(
            f"RSSI threshold must be an integer, got {threshold!r}")
    if not RSSI_THRESHOLD_MIN <= threshold <= RSSI_THRESHOLD_MAX:
        raise ValueError(
            f"RSSI threshold must be between {RSSI_THRESHOLD_MIN} and "
            f"{RSSI_THRESHOLD_MAX} dBm, got {threshold}")
    return FilterCriteria(target_uuid=criteria.target_uuid.upper(),
                          rssi_threshold=threshold)


def estimate_distance(rssi: int, tx_power: Optional[int],
                      env: str = "free_space",
                      ref_rssi: Optional[int] = None) -> Optional[float]:
    """Estimate distance in meters using the log-distance path loss model.

    *ref_rssi*, when given, is the expected RSSI at one metre and takes
    precedence over *tx_power*.  iBeacon frames carry that calibrated
    value directly in their last byte; *tx_power* is treated the same way
    when it already looks like a 1 m reading (below -30 dBm), otherwise
    ``_DEFAULT_REF_OFFSET`` is subtracted from it.
    """
    if rssi == 0:
        return None
    if ref_rssi is not None:
        measured_power = ref_rssi
    elif tx_power is not None:
        measured_power = tx_power if tx_power < -30 else tx_power - _DEFAULT_REF_OFFSET
    else:
        return None
    n = _ENV_PATH_LOSS.get(env, 2.0)
    return 10 ** ((measured_power - rssi) / (10 * n))
