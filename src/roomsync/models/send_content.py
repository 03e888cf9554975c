"""Outgoing message envelopes."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from roomsync.models.event import EVENT_TYPE_ENCRYPTED, EVENT_TYPE_MESSAGE, MSGTYPE_TEXT


def text_payload(body: str) -> dict[str, str]:
    return {"msgtype": MSGTYPE_TEXT, "body": body}


@dataclass(frozen=True)
class PlainContent:
    body: str

    @property
    def event_type(self) -> str:
        return EVENT_TYPE_MESSAGE

    def payload(self) -> dict[str, Any]:
        return text_payload(self.body)


@dataclass(frozen=True)
class EncryptedContent:
    ciphertext_envelope: Mapping[str, Any]

    @property
    def event_type(self) -> str:
        return EVENT_TYPE_ENCRYPTED

    def payload(self) -> dict[str, Any]:
        return dict(self.ciphertext_envelope)

    @classmethod
    def from_engine_output(cls, ciphertext_json: str) -> EncryptedContent:
        """Wrap the JSON string returned by the crypto engine.

        Raises:
            ValueError: If the engine output is not a JSON object.
        """
        envelope = json.loads(ciphertext_json)
        if not isinstance(envelope, dict):
            raise ValueError("Encrypted envelope must be a JSON object")
        return cls(ciphertext_envelope=envelope)


SendContent = PlainContent | EncryptedContent
