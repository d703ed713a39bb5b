"""Session coordinator for jam sessions.

The relay is the source of truth for who hosts the session: the manager
mirrors the roster it receives and never elects a host on its own. The host
broadcasts full timer snapshots on a fixed interval; participants apply them
wholesale.
"""

import asyncio
from collections.abc import Callable
from typing import Any
from uuid import uuid4

import structlog

from .client import JamClient
from .config import JamConfig
from .protocol import (
    ConnectionState,
    ControlAction,
    ControlMessage,
    ErrorMessage,
    JamMessage,
    JamParticipant,
    JamSession,
    MessageType,
    ParticipantUpdateMessage,
    StateSyncMessage,
    TransferHostMessage,
    now_ms,
)
from .session_code import generate_session_code
from .timer import JamTimer

logger = structlog.get_logger()


class JamManager:
    """Coordinates one jam session for the local process."""

    def __init__(
        self,
        timer: JamTimer,
        is_host: bool,
        participant_name: str,
        session_code: str | None = None,
        config: JamConfig | None = None,
        on_state_change: Callable[[], None] | None = None,
        on_participants_change: Callable[[list[JamParticipant]], None] | None = None,
        on_connection_change: Callable[[ConnectionState], None] | None = None,
        on_host_change: Callable[[bool], None] | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            timer: Timer whose state is shared
            is_host: Whether this process starts the session
            participant_name: Display name shown to others
            session_code: Code of the session to join (generated for hosts)
            config: Jam configuration
            on_state_change: Called when the timer state should be re-rendered
            on_participants_change: Called with the new roster
            on_connection_change: Called with the new connection state
            on_host_change: Called with the new role when it changes

        Raises:
            ValueError: If a participant does not provide a session code
        """
        if not is_host and not session_code:
            raise ValueError("A session code is required to join a session")

        self.timer = timer
        self.config = config or JamConfig()
        self.participant_name = participant_name
        self.participant_id = uuid4().hex[:12]
        self.session_code = generate_session_code() if is_host else session_code
        self.created_at = now_ms()

        self._on_state_change = on_state_change
        self._on_participants_change = on_participants_change
        self._on_connection_change = on_connection_change
        self._on_host_change = on_host_change

        self._is_host = is_host
        self._participants: list[JamParticipant] = []
        self._connection_state = ConnectionState.DISCONNECTED
        self._client: JamClient | None = None
        self._broadcast_task: asyncio.Task[None] | None = None

        self._handlers: dict[MessageType, Callable[[Any], None]] = {
            MessageType.STATE_SYNC: self._handle_state_sync,
            MessageType.CONTROL: self._handle_control,
            MessageType.PARTICIPANT_UPDATE: self._handle_participant_update,
            MessageType.TRANSFER_HOST: self._handle_relay_bookkeeping,
            MessageType.JOIN: self._handle_relay_bookkeeping,
            MessageType.LEAVE: self._handle_relay_bookkeeping,
            MessageType.ERROR: self._handle_error,
        }

        # Participants receive state from the host
        if not is_host:
            self.timer.set_jam_mode(True)

    async def connect(self) -> None:
        """Connect to the session and, as host, start broadcasting state.

        Raises:
            JamConnectionError: If the relay configuration is invalid
        """
        if self._client is None:
            self._client = JamClient(
                config=self.config,
                session_code=self.session_code,
                participant_id=self.participant_id,
                participant_name=self.participant_name,
                is_host=self._is_host,
                on_message=self.handle_message,
                on_connection_change=self._handle_connection_change,
            )

        await self._client.connect()

        if (
            self._is_host
            and self._connection_state != ConnectionState.ERROR
            and not self._is_broadcasting()
        ):
            self._start_state_broadcast()

    def handle_message(self, message: JamMessage) -> None:
        """Apply an inbound message according to the local role."""
        handler = self._handlers.get(MessageType(message.type))
        if handler is None:
            logger.debug("Ignoring unknown message type", type=message.type)
            return
        handler(message)

    def _handle_state_sync(self, message: StateSyncMessage) -> None:
        if self._is_host or message.sender_id == self.participant_id:
            return

        self.timer.set_state(message.state)
        self._notify_state_change()

    def _handle_control(self, message: ControlMessage) -> None:
        if self._is_host:
            return

        # The state itself arrives with the next state-sync; this is only a
        # hint to refresh the UI.
        logger.debug("Control received", action=message.action.value, sender_id=message.sender_id)
        self._notify_state_change()

    def _handle_participant_update(self, message: ParticipantUpdateMessage) -> None:
        self._participants = list(message.participants)

        me = next((p for p in self._participants if p.id == self.participant_id), None)
        if me is not None and me.is_host != self._is_host:
            was_host = self._is_host
            self._is_host = me.is_host
            if self._client is not None:
                self._client.is_host = me.is_host

            if self._is_host and not was_host:
                logger.info("Became session host", session_code=self.session_code)
                self.timer.set_jam_mode(False)
                self._start_state_broadcast()
            elif was_host and not self._is_host:
                logger.info("Host role handed off", session_code=self.session_code)
                self._stop_state_broadcast()
                self.timer.set_jam_mode(True)

            if self._on_host_change:
                self._on_host_change(self._is_host)

        if self._on_participants_change:
            self._on_participants_change(self._participants)

    def _handle_relay_bookkeeping(self, message: JamMessage) -> None:
        # Role and roster changes arrive through participant-update
        logger.debug("Relay bookkeeping message", type=message.type, sender_id=message.sender_id)

    def _handle_error(self, message: ErrorMessage) -> None:
        logger.warning("Relay reported an error", error=message.message)

    def _handle_connection_change(self, state: ConnectionState) -> None:
        self._connection_state = state
        if state == ConnectionState.ERROR:
            # connect() restarts it once the relay is reachable again
            self._stop_state_broadcast()
        if self._on_connection_change:
            self._on_connection_change(state)

    def _notify_state_change(self) -> None:
        if self._on_state_change:
            self._on_state_change()

    def _is_broadcasting(self) -> bool:
        return self._broadcast_task is not None and not self._broadcast_task.done()

    def _start_state_broadcast(self) -> None:
        self._stop_state_broadcast()
        self._broadcast_task = asyncio.create_task(self._state_broadcast_loop())

    def _stop_state_broadcast(self) -> None:
        if self._broadcast_task and not self._broadcast_task.done():
            self._broadcast_task.cancel()
        self._broadcast_task = None

    async def _state_broadcast_loop(self) -> None:
        """Send the timer state to participants on a fixed interval."""
        interval = self.config.state_sync_interval_ms / 1000
        while True:
            try:
                await asyncio.sleep(interval)

                if self._client is not None and self._client.is_connected:
                    await self._client.send(
                        StateSyncMessage(
                            sender_id=self.participant_id,
                            state=self.timer.get_state(),
                        )
                    )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("State broadcast error", error=str(e))

    async def send_control(self, action: ControlAction | str) -> None:
        """Relay a timer command to participants (host only)."""
        if not self._is_host or not self.is_connected or self._client is None:
            return

        try:
            action = ControlAction(action)
        except ValueError:
            logger.warning("Rejecting unknown control action", action=action)
            return

        await self._client.send(ControlMessage(sender_id=self.participant_id, action=action))

    async def transfer_host(self, new_host_id: str) -> None:
        """Ask the relay to hand the host role to another participant (host only)."""
        if not self._is_host or not self.is_connected or self._client is None:
            return
        if new_host_id == self.participant_id:
            return

        logger.info("Transferring host", new_host_id=new_host_id)
        await self._client.send(
            TransferHostMessage(sender_id=self.participant_id, new_host_id=new_host_id)
        )

    async def disconnect(self) -> None:
        """Stop broadcasting and leave the session."""
        self._stop_state_broadcast()

        client, self._client = self._client, None
        if client is not None:
            await client.disconnect()

        self._connection_state = ConnectionState.DISCONNECTED

    @property
    def participants(self) -> list[JamParticipant]:
        return self._participants

    @property
    def other_participants(self) -> list[JamParticipant]:
        """Roster without ourselves, for picking a transfer target."""
        return [p for p in self._participants if p.id != self.participant_id]

    @property
    def session(self) -> JamSession:
        host = next((p for p in reversed(self._participants) if p.is_host), None)
        return JamSession(
            code=self.session_code,
            host_id=host.id if host else None,
            participants=self._participants,
            created_at=self.created_at,
        )

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection_state

    @property
    def is_host(self) -> bool:
        return self._is_host

    @property
    def is_connected(self) -> bool:
        return self._connection_state == ConnectionState.CONNECTED
