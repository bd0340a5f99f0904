"""Client connection lifecycle: negotiation, reconnection, heartbeat and acks."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from models.wire_protocol import (
	ConversationCreatedPayload,
	EventNames,
	ProtocolError,
	WirePayload,
	decode_frame,
	encode_frame,
	parse_chat_event,
	parse_payload,
)
from services.lifecycle.coordinator import LifecycleCoordinator
from services.lifecycle.message_ids import validate_message_id
from services.transport.base import AckTimeoutError, Transport, TransportError
from services.transport.polling_transport import PollingTransport
from services.transport.websocket_transport import WebSocketTransport
from utils.settings import TransportSettings

LOGGER = logging.getLogger(__name__)


class ConnectionState(str, Enum):
	DISCONNECTED = "disconnected"
	CONNECTING = "connecting"
	CONNECTED = "connected"
	RECONNECTING = "reconnecting"
	FAILED = "failed"


TransportFactory = Callable[[str], Transport]


class TransportSession:
	"""Keep one logical session alive across transports and reconnects.

	The session id stays the same for the whole session, so the server can
	re-attach its buffered outbox after a reconnect. Transport failures keep
	every handler, queued event and pending ack; only `disconnect()` clears
	them and shuts the coordinator down.
	"""

	def __init__(
		self,
		coordinator: LifecycleCoordinator,
		settings: Optional[TransportSettings] = None,
		*,
		transport_factory: Optional[TransportFactory] = None,
		session_id: Optional[str] = None,
		on_state_change: Optional[Callable[[ConnectionState], Any]] = None,
	) -> None:
		self.coordinator = coordinator
		self.settings = settings or TransportSettings()
		self.session_id = session_id or uuid.uuid4().hex
		self._factory = transport_factory or self._default_transport
		self._on_state_change = on_state_change

		self.state = ConnectionState.DISCONNECTED
		self.transport_name: Optional[str] = None
		self.reconnect_attempts = 0
		self.last_heartbeat = time.time()
		self.last_error: Optional[str] = None

		self._transport: Optional[Transport] = None
		self._run_task: Optional[asyncio.Task] = None
		self._heartbeat_task: Optional[asyncio.Task] = None
		self._health_task: Optional[asyncio.Task] = None
		self._waiters: List[asyncio.Future] = []
		self._pending_acks: Dict[int, asyncio.Future] = {}
		self._ack_ids = itertools.count(1)
		self._closing = False

	@property
	def is_connected(self) -> bool:
		return self.state is ConnectionState.CONNECTED and self._transport is not None

	async def connect(self) -> None:
		"""Return once connected; raise TransportError when that cannot happen."""
		if self.is_connected:
			return
		if self._run_task is None or self._run_task.done():
			self._closing = False
			self.reconnect_attempts = 0
			self.coordinator.start()
			self._set_state(ConnectionState.CONNECTING)
			self._run_task = asyncio.create_task(self._run())

		waiter = asyncio.get_running_loop().create_future()
		self._waiters.append(waiter)
		try:
			await asyncio.wait_for(waiter, timeout=self.settings.connect_timeout)
		except asyncio.TimeoutError as exc:
			raise TransportError("Connection timeout - check network and server availability") from exc
		finally:
			if waiter in self._waiters:
				self._waiters.remove(waiter)

	async def disconnect(self) -> None:
		"""Close the session for good and release all client-side state."""
		self._closing = True
		await self._stop_background()
		if self._run_task is not None:
			self._run_task.cancel()
			with contextlib.suppress(asyncio.CancelledError):
				await self._run_task
			self._run_task = None
		await self._close_transport()

		for future in self._pending_acks.values():
			future.cancel()
		self._pending_acks.clear()
		self._resolve_waiters(TransportError("Session disconnected"))
		self.coordinator.shutdown()
		self._set_state(ConnectionState.DISCONNECTED)
		LOGGER.info("Session %s disconnected", self.session_id)

	async def send(
		self,
		event: str,
		payload: Union[WirePayload, Dict[str, Any], None] = None,
		*,
		ack_timeout: Optional[float] = None,
	) -> Optional[Dict[str, Any]]:
		"""Send one frame; with `ack_timeout`, wait for and return the server ack."""
		if not self.is_connected:
			await self.connect()
		transport = self._transport
		if transport is None:
			raise TransportError("Not connected")

		ack_id: Optional[int] = None
		future: Optional[asyncio.Future] = None
		if ack_timeout is not None:
			ack_id = next(self._ack_ids)
			future = asyncio.get_running_loop().create_future()
			self._pending_acks[ack_id] = future
		try:
			await transport.send(encode_frame(event, payload, ack_id))
			if future is None:
				return None
			return await asyncio.wait_for(future, timeout=ack_timeout)
		except asyncio.TimeoutError as exc:
			raise AckTimeoutError(f"No acknowledgement for {event} within {ack_timeout}s") from exc
		finally:
			if ack_id is not None:
				self._pending_acks.pop(ack_id, None)

	def snapshot(self) -> Dict[str, Any]:
		return {
			"session_id": self.session_id,
			"state": self.state.value,
			"transport": self.transport_name,
			"reconnect_attempts": self.reconnect_attempts,
			"last_heartbeat_age": round(time.time() - self.last_heartbeat, 1),
			"last_error": self.last_error,
			"pending_acks": len(self._pending_acks),
			"coordinator": self.coordinator.snapshot(),
		}

	def handle_frame(self, raw: str) -> None:
		"""Decode one inbound frame and route it."""
		try:
			frame = decode_frame(raw)
		except ProtocolError as exc:
			LOGGER.warning("Dropping malformed frame: %s", exc)
			return

		if frame.event == EventNames.ACK:
			future = self._pending_acks.get(frame.ack) if frame.ack is not None else None
			if future is not None and not future.done():
				future.set_result(frame.data or {})
			return
		if frame.event == EventNames.PONG:
			self.last_heartbeat = time.time()
			return
		if frame.event == EventNames.PING:
			return
		if frame.event == EventNames.ERROR:
			LOGGER.error("Server reported an error: %s", frame.data)
			return
		try:
			if frame.event == EventNames.CONVERSATION_CREATED:
				self.coordinator.apply_conversation_created(parse_payload(ConversationCreatedPayload, frame.data))
			else:
				event = parse_chat_event(frame.event, frame.data)
				if not validate_message_id(event.message_id):
					LOGGER.debug("%s frame carries a malformed message id %r", frame.event, event.message_id)
				self.coordinator.deliver(event)
		except ProtocolError as exc:
			LOGGER.warning("Dropping %s frame: %s", frame.event, exc)

	def _default_transport(self, name: str) -> Transport:
		if name == "websocket":
			return WebSocketTransport(self.settings.server_url, open_timeout=self.settings.connect_timeout)
		if name == "polling":
			return PollingTransport(self.settings.server_url, poll_timeout=self.settings.poll_timeout)
		raise ValueError(f"Unknown transport: {name}")

	async def _run(self) -> None:
		delay = self.settings.reconnect_delay
		while not self._closing:
			transport = await self._open_transport()
			if transport is None:
				self.reconnect_attempts += 1
				LOGGER.warning(
					"Connection attempt %d/%d failed: %s",
					self.reconnect_attempts,
					self.settings.reconnect_attempts,
					self.last_error,
				)
				if self.reconnect_attempts >= self.settings.reconnect_attempts:
					self._set_state(ConnectionState.FAILED)
					self._resolve_waiters(
						TransportError(
							f"Failed to connect after {self.reconnect_attempts} attempts. "
							f"Last error: {self.last_error}"
						)
					)
					return
				await asyncio.sleep(delay)
				delay = min(delay * 2, self.settings.reconnect_delay_max)
				continue

			delay = self.settings.reconnect_delay
			self._on_connected(transport)
			try:
				async for raw in transport.receive():
					self.handle_frame(raw)
				raise TransportError("Server closed the connection")
			except TransportError as exc:
				self.last_error = str(exc)
				LOGGER.warning(
					"Transport %s lost (%s); keeping %d handler set(s) and %d queued event(s)",
					self.transport_name,
					exc,
					len(self.coordinator.handlers),
					self.coordinator.reconciler.queued_count(),
				)
			finally:
				await self._stop_background()
				await self._close_transport()
			if not self._closing:
				self._set_state(ConnectionState.RECONNECTING)

	async def _open_transport(self) -> Optional[Transport]:
		for name in self.settings.transports:
			try:
				transport = self._factory(name)
			except ValueError as exc:
				LOGGER.error("Skipping transport %s: %s", name, exc)
				continue
			try:
				await transport.open(self.session_id)
			except TransportError as exc:
				self.last_error = str(exc)
				LOGGER.warning("Transport %s unavailable: %s", name, exc)
				with contextlib.suppress(TransportError):
					await transport.close()
				continue
			self.transport_name = name
			return transport
		return None

	def _on_connected(self, transport: Transport) -> None:
		self._transport = transport
		self.reconnect_attempts = 0
		self.last_heartbeat = time.time()
		self.last_error = None
		self._set_state(ConnectionState.CONNECTED)
		LOGGER.info("Connected to %s via %s (session %s)", self.settings.server_url, self.transport_name, self.session_id)
		self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
		self._health_task = asyncio.create_task(self._health_loop())
		replayed = self.coordinator.replay_queued()
		if replayed:
			LOGGER.info("Replayed %d queued event(s) after connect", replayed)
		self._resolve_waiters(None)

	async def _heartbeat_loop(self) -> None:
		while True:
			await asyncio.sleep(self.settings.heartbeat_interval)
			transport = self._transport
			if transport is None:
				continue
			try:
				await transport.send(encode_frame(EventNames.PING))
			except TransportError as exc:
				LOGGER.warning("Heartbeat failed: %s", exc)
				return

	async def _health_loop(self) -> None:
		while True:
			await asyncio.sleep(self.settings.health_interval)
			purged = self.coordinator.reconciler.purge_expired()
			LOGGER.info("Connection health: %s (purged %d queued event(s))", self.snapshot(), purged)

	async def _stop_background(self) -> None:
		for task in (self._heartbeat_task, self._health_task):
			if task is not None and not task.done():
				task.cancel()
				with contextlib.suppress(asyncio.CancelledError):
					await task
		self._heartbeat_task = None
		self._health_task = None

	async def _close_transport(self) -> None:
		transport, self._transport = self._transport, None
		if transport is None:
			return
		try:
			await transport.close()
		except Exception as exc:
			LOGGER.debug("Ignoring error while closing %s transport: %s", transport.name, exc)

	def _resolve_waiters(self, error: Optional[Exception]) -> None:
		waiters, self._waiters = self._waiters, []
		for waiter in waiters:
			if waiter.done():
				continue
			if error is None:
				waiter.set_result(None)
			else:
				waiter.set_exception(error)

	def _set_state(self, state: ConnectionState) -> None:
		if state is self.state:
			return
		self.state = state
		LOGGER.debug("Session %s state: %s", self.session_id, state.value)
		if self._on_state_change is None:
			return
		try:
			self._on_state_change(state)
		except Exception:
			LOGGER.exception("Connection state listener raised")
