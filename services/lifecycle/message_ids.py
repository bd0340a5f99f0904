"""Collision-resistant message identifiers generated on the client."""

from __future__ import annotations

import hashlib
import logging
import os
import platform
import re
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Optional

LOGGER = logging.getLogger(__name__)

ID_PREFIX = "msg"
SEQUENCE_MODULUS = 1_000_000

_ID_PATTERN = re.compile(r"^msg_(\d+)_[a-f0-9]{8}_[a-z0-9]+_\d{6}$")
_FINGERPRINT_PATTERN = re.compile(r"^[a-z0-9]+$")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
	if value == 0:
		return "0"
	digits = []
	while value:
		value, remainder = divmod(value, 36)
		digits.append(_BASE36[remainder])
	return "".join(reversed(digits))


def session_fingerprint() -> str:
	"""Return a short base-36 fingerprint of this process and its host.

	The random salt keeps two processes on the same host apart even when
	every environment attribute matches.
	"""
	components = [
		platform.node(),
		platform.system(),
		platform.machine(),
		platform.python_version(),
		str(os.getpid()),
		time.strftime("%Z"),
		secrets.token_hex(4),
	]
	digest = hashlib.blake2s("|".join(components).encode("utf-8"), digest_size=5).digest()
	return _to_base36(int.from_bytes(digest, "big"))


class MessageIdGenerator:
	"""Generate ids of the form ``msg_<micros>_<hex8>_<fingerprint>_<seq6>``."""

	def __init__(self, fingerprint: Optional[str] = None) -> None:
		fingerprint = fingerprint or session_fingerprint()
		if not _FINGERPRINT_PATTERN.match(fingerprint):
			raise ValueError("Fingerprint must be lowercase base-36.")
		self.fingerprint = fingerprint
		self._sequence = 0

	def generate(self) -> str:
		"""Return a new id. Only side effect: the sequence counter advances."""
		self._sequence = (self._sequence + 1) % SEQUENCE_MODULUS
		micros = time.time_ns() // 1000
		message_id = f"{ID_PREFIX}_{micros}_{secrets.token_hex(4)}_{self.fingerprint}_{self._sequence:06d}"
		LOGGER.debug("Generated message id %s", message_id)
		return message_id

	def validate(self, message_id: Any) -> bool:
		return validate_message_id(message_id)

	def extract_timestamp(self, message_id: Any) -> Optional[datetime]:
		return extract_timestamp(message_id)


def validate_message_id(message_id: Any) -> bool:
	"""Structural check only; the id is never parsed for meaning."""
	valid = isinstance(message_id, str) and _ID_PATTERN.match(message_id) is not None
	if not valid:
		LOGGER.debug("Invalid message id format: %r", message_id)
	return valid


def extract_timestamp(message_id: Any) -> Optional[datetime]:
	"""Return the UTC creation time embedded in a valid id, else None."""
	if not isinstance(message_id, str):
		return None
	match = _ID_PATTERN.match(message_id)
	if match is None:
		return None
	micros = int(match.group(1))
	try:
		return datetime.fromtimestamp(micros / 1_000_000, tz=timezone.utc)
	except (OverflowError, OSError, ValueError):
		return None
