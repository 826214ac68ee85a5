"""Data types shared by the decoder, filter, recorder and store."""

import os
import time
from dataclasses import dataclass, field, replace
from typing import List, Optional

# Filter defaults when no settings have been stored
DEFAULT_TARGET_UUID = "E101B392-ADA3-2224-2316-05EF58774925"
DEFAULT_RSSI_THRESHOLD = -70

RSSI_THRESHOLD_MIN = -100
RSSI_THRESHOLD_MAX = 0


def now_ms() -> int:
    """Return the current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def _unique_id(timestamp: int, prefix: str = "") -> str:
    # time + random suffix keeps ids unique across concurrent creation
    return f"{prefix}{timestamp}_{os.urandom(5).hex()}"


@dataclass(frozen=True)
class BeaconAdvertisement:
    """A decoded iBeacon frame plus the RSSI it was received at."""

    uuid: str
    major: int
    minor: int
    rssi: int
    tx_power: Optional[int] = None


@dataclass(frozen=True)
class FilterCriteria:
    target_uuid: str = DEFAULT_TARGET_UUID
    rssi_threshold: int = DEFAULT_RSSI_THRESHOLD

    def to_dict(self) -> dict:
        return {
            "targetUuid": self.target_uuid,
            "rssiThreshold": self.rssi_threshold,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FilterCriteria":
        return cls(
            target_uuid=data.get("targetUuid", DEFAULT_TARGET_UUID),
            rssi_threshold=data.get("rssiThreshold", DEFAULT_RSSI_THRESHOLD),
        )


@dataclass(frozen=True)
class BeaconRead:
    """One accepted advertisement, as stored inside a session."""

    id: str
    uuid: str
    major: int
    minor: int
    rssi: int
    timestamp: int

    @classmethod
    def from_advertisement(cls, adv: BeaconAdvertisement,
                           timestamp: Optional[int] = None) -> "BeaconRead":
        ts = now_ms() if timestamp is None else timestamp
        return cls(
            id=_unique_id(ts),
            uuid=adv.uuid,
            major=adv.major,
            minor=adv.minor,
            rssi=adv.rssi,
            timestamp=ts,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "uuid": self.uuid,
            "major": self.major,
            "minor": self.minor,
            "rssi": self.rssi,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BeaconRead":
        return cls(
            id=str(data["id"]),
            uuid=str(data["uuid"]),
            major=int(data["major"]),
            minor=int(data["minor"]),
            rssi=int(data["rssi"]),
            timestamp=int(data["timestamp"]),
        )


@dataclass
class Session:
    """A named, time-bounded recording of beacon reads.

    ``end_time`` is only set once the session has been saved.
    """

    id: str
    name: str
    start_time: int
    end_time: Optional[int] = None
    beacon_reads: List[BeaconRead] = field(default_factory=list)

    @classmethod
    def new(cls, name: str, start_time: Optional[int] = None) -> "Session":
        ts = now_ms() if start_time is None else start_time
        return cls(id=_unique_id(ts, prefix="session_"), name=name,
                   start_time=ts)

    @property
    def finalized(self) -> bool:
        return self.end_time is not None

    def snapshot(self) -> "Session":
        """Copy that shares the (immutable) reads but not the list."""
        return replace(self, beacon_reads=list(self.beacon_reads))

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "startTime": self.start_time,
            "beaconReads": [r.to_dict() for r in self.beacon_reads],
        }
        if self.end_time is not None:
            data["endTime"] = self.end_time
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        end_time = data.get("endTime")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            start_time=int(data["startTime"]),
            end_time=int(end_time) if end_time is not None else None,
            beacon_reads=[BeaconRead.from_dict(r)
                          for r in data.get("beaconReads", [])],
        )
