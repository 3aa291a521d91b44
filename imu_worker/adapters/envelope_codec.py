"""
JSON envelope codec.
Turns raw queue payloads into validated telemetry batches.
"""

import json
import logging

from pydantic import ValidationError

from ..domain.dto import TelemetryBatch
from ..domain.ports import DecodeError, EnvelopeDecoder


logger = logging.getLogger(__name__)


class JsonEnvelopeCodec(EnvelopeDecoder):
    """
    Decoder for the producer's JSON envelope::

        {"sessionId": "...", "userId": "...", "receivedAt": "...",
         "dataPoints": [{"timestamp": 1700000000000, "accelX": 0.5, ...}]}

    Any failure here is a property of the payload itself, so it is reported
    as DecodeError and the message is never retried.
    """

    def decode(self, body: bytes) -> TelemetryBatch:
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, ValueError) as e:
            raise DecodeError(f"Payload is not valid JSON: {e}") from e
        except RecursionError as e:
            raise DecodeError("Payload nesting exceeds parser depth") from e

        if not isinstance(payload, dict):
            raise DecodeError(f"Payload must be a JSON object, got {type(payload).__name__}")

        try:
            batch = TelemetryBatch.model_validate(payload)
        except ValidationError as e:
            raise DecodeError(self._describe(e)) from e

        logger.debug(
            "Decoded telemetry batch",
            extra={
                "component": "envelope_codec",
                "session_id": batch.session_id,
                "data_points": len(batch.data_points),
                "size_bytes": len(body)
            }
        )

        return batch

    @staticmethod
    def _describe(error: ValidationError) -> str:
        problems = []
        for item in error.errors()[:5]:
            location = ".".join(str(part) for part in item["loc"]) or "<root>"
            problems.append(f"{location}: {item['msg']}")
        return "Invalid envelope: " + "; ".join(problems)


def create_envelope_codec() -> JsonEnvelopeCodec:
    return JsonEnvelopeCodec()
