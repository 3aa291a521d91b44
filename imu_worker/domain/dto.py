"""
Data Transfer Objects for the IMU ingestion worker.
Defines the wire envelope, the persisted record and internal runtime models.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Column ranges of the durable table (BIGINT, INTEGER, REAL, DOUBLE PRECISION).
# A value outside them can never be stored, so it must fail decoding.
INT64_MIN, INT64_MAX = -2 ** 63, 2 ** 63 - 1
INT32_MIN, INT32_MAX = -2 ** 31, 2 ** 31 - 1
FLOAT32_MAX = 3.4028234663852886e38

Int64 = Annotated[int, Field(strict=True, ge=INT64_MIN, le=INT64_MAX)]
Int32 = Annotated[int, Field(strict=True, ge=INT32_MIN, le=INT32_MAX)]
Float32 = Annotated[float, Field(allow_inf_nan=False, ge=-FLOAT32_MAX, le=FLOAT32_MAX)]
Float64 = Annotated[float, Field(allow_inf_nan=False)]

# PostgreSQL text cannot hold NUL characters
TEXT_PATTERN = r"^[^\x00]*$"


class SettleOutcome(Enum):
    """Broker action taken for a finished delivery"""
    ACK = "ack"
    REJECT = "reject"      # negative-ack, requeue=false
    REQUEUE = "requeue"    # negative-ack, requeue=true


@dataclass(frozen=True)
class Delivery:
    """
    One message received from the broker.

    ``handle`` is assigned by the channel adapter and is the only thing
    needed to ack/nack the message later.
    """
    body: bytes
    handle: int
    redelivered: bool = False
    received_at: datetime = field(default_factory=utc_now)


class WireModel(BaseModel):
    """
    Base for models decoded from producer JSON.

    Property names are camelCase on the wire and matched case-insensitively,
    unknown properties are ignored.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra='ignore'
    )

    @model_validator(mode='before')
    @classmethod
    def _match_keys_case_insensitive(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        known = {}
        for name, info in cls.model_fields.items():
            known[name.lower()] = name
            if info.alias:
                known[info.alias.lower()] = info.alias

        remapped = {}
        for key, value in data.items():
            target = known.get(key.lower(), key) if isinstance(key, str) else key
            remapped[target] = value
        return remapped


class IMUDataPoint(WireModel):
    """
    Single sensor sample.

    Only ``timestamp`` is required: devices differ in which sensors they
    have, so every reading is independently nullable.
    """

    timestamp: Int64 = Field(..., description="Epoch milliseconds")
    timestamp_nanos: Optional[Int64] = Field(None, description="Sub-millisecond component")

    # Calibrated motion sensors
    accel_x: Optional[Float32] = None
    accel_y: Optional[Float32] = None
    accel_z: Optional[Float32] = None
    gyro_x: Optional[Float32] = None
    gyro_y: Optional[Float32] = None
    gyro_z: Optional[Float32] = None
    mag_x: Optional[Float32] = None
    mag_y: Optional[Float32] = None
    mag_z: Optional[Float32] = None
    gravity_x: Optional[Float32] = None
    gravity_y: Optional[Float32] = None
    gravity_z: Optional[Float32] = None
    linear_accel_x: Optional[Float32] = None
    linear_accel_y: Optional[Float32] = None
    linear_accel_z: Optional[Float32] = None

    # Uncalibrated sensors
    accel_uncal_x: Optional[Float32] = None
    accel_uncal_y: Optional[Float32] = None
    accel_uncal_z: Optional[Float32] = None
    accel_bias_x: Optional[Float32] = None
    accel_bias_y: Optional[Float32] = None
    accel_bias_z: Optional[Float32] = None
    gyro_uncal_x: Optional[Float32] = None
    gyro_uncal_y: Optional[Float32] = None
    gyro_uncal_z: Optional[Float32] = None
    gyro_drift_x: Optional[Float32] = None
    gyro_drift_y: Optional[Float32] = None
    gyro_drift_z: Optional[Float32] = None
    mag_uncal_x: Optional[Float32] = None
    mag_uncal_y: Optional[Float32] = None
    mag_uncal_z: Optional[Float32] = None
    mag_bias_x: Optional[Float32] = None
    mag_bias_y: Optional[Float32] = None
    mag_bias_z: Optional[Float32] = None

    # Rotation vectors
    rotation_vector_x: Optional[Float32] = None
    rotation_vector_y: Optional[Float32] = None
    rotation_vector_z: Optional[Float32] = None
    rotation_vector_w: Optional[Float32] = None
    game_rotation_x: Optional[Float32] = None
    game_rotation_y: Optional[Float32] = None
    game_rotation_z: Optional[Float32] = None
    game_rotation_w: Optional[Float32] = None
    geomag_rotation_x: Optional[Float32] = None
    geomag_rotation_y: Optional[Float32] = None
    geomag_rotation_z: Optional[Float32] = None
    geomag_rotation_w: Optional[Float32] = None

    # Environmental sensors
    pressure: Optional[Float32] = None
    temperature: Optional[Float32] = None
    light: Optional[Float32] = None
    humidity: Optional[Float32] = None
    proximity: Optional[Float32] = None

    # Activity sensors
    step_counter: Optional[Int32] = None
    step_detected: Optional[bool] = None

    # Computed orientation
    roll: Optional[Float32] = None
    pitch: Optional[Float32] = None
    yaw: Optional[Float32] = None
    heading: Optional[Float32] = None

    # GPS
    latitude: Optional[Float64] = None
    longitude: Optional[Float64] = None
    altitude: Optional[Float64] = None
    gps_accuracy: Optional[Float32] = None
    speed: Optional[Float32] = None


class TelemetryBatch(WireModel):
    """
    Decoded queue message.
    A batch always holds at least one data point.
    """

    session_id: Optional[str] = Field(None, pattern=TEXT_PATTERN, description="Recording session")
    user_id: Optional[str] = Field(None, pattern=TEXT_PATTERN, description="Owner of the session")
    data_points: List[IMUDataPoint] = Field(..., min_length=1, description="Samples in producer order")
    received_at: datetime = Field(default_factory=utc_now, description="When the API accepted the batch")


class IMUDataRecord(IMUDataPoint):
    """
    Row written to the durable store.
    Field names double as column names of the target table.
    """
    model_config = ConfigDict(extra='forbid')

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    is_synced: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_point(
        cls,
        point: IMUDataPoint,
        session_id: Optional[str],
        user_id: Optional[str],
        now: Optional[datetime] = None
    ) -> "IMUDataRecord":
        """Enrich a data point with batch identity and a fresh record id."""
        now = now or utc_now()
        return cls(
            **point.model_dump(),
            session_id=session_id,
            user_id=user_id,
            created_at=now,
            updated_at=now
        )


RECORD_COLUMNS = tuple(IMUDataRecord.model_fields)


class ConsumerStats(BaseModel):
    """Runtime counters of the consumer loop"""
    model_config = ConfigDict(extra='forbid')

    deliveries_received: int = Field(default=0, description="Deliveries taken from the broker")
    deliveries_acked: int = Field(default=0, description="Deliveries acknowledged")
    deliveries_rejected: int = Field(default=0, description="Poison deliveries dropped")
    deliveries_requeued: int = Field(default=0, description="Deliveries handed back for retry")
    settle_failures: int = Field(default=0, description="Ack/nack calls that failed")

    points_persisted: int = Field(default=0, description="Records written to the durable store")

    in_flight: int = Field(default=0, description="Deliveries currently admitted")
    peak_in_flight: int = Field(default=0, description="Highest admitted count seen")
    max_concurrency: int = Field(default=0, description="Admission gate capacity")

    last_activity: Optional[datetime] = Field(None, description="Last settled delivery")

    def record_outcome(self, outcome: SettleOutcome) -> None:
        if outcome == SettleOutcome.ACK:
            self.deliveries_acked += 1
        elif outcome == SettleOutcome.REJECT:
            self.deliveries_rejected += 1
        else:
            self.deliveries_requeued += 1
        self.last_activity = utc_now()

    def summary(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')
