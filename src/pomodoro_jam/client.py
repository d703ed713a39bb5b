"""WebSocket client for the jam relay."""

import asyncio
import contextlib
from collections.abc import Callable
from urllib.parse import quote, urlencode

import structlog
import websockets
from websockets.asyncio.client import ClientConnection

from .config import JamConfig
from .protocol import (
    ConnectionState,
    JamMessage,
    JoinMessage,
    LeaveMessage,
    encode_message,
    parse_message,
)

logger = structlog.get_logger()


class JamError(Exception):
    """Base error for jam sessions."""


class JamConnectionError(JamError):
    """The relay connection could not be set up from the given configuration."""


def reconnect_delay(attempt: int, base_ms: int) -> int:
    """Backoff delay in milliseconds before reconnection attempt ``attempt`` (1-based)."""
    return base_ms * 2 ** (attempt - 1)


def build_relay_url(
    server: str,
    session_code: str,
    participant_id: str,
    participant_name: str,
    is_host: bool,
) -> str:
    """Build the relay room URL.

    PartyKit URL format: wss://<project>.<user>.partykit.dev/party/<room>

    Raises:
        ValueError: If the server or session code is empty.
    """
    if not session_code:
        raise ValueError("Session code is required")

    scheme, _, host = server.strip().rpartition("://")
    scheme = {"https": "wss", "http": "ws", "ws": "ws", "wss": "wss", "": "wss"}.get(scheme)
    if scheme is None:
        raise ValueError(f"Unsupported relay scheme: {server}")

    host = host.rstrip("/")
    if not host:
        raise ValueError("Relay server address is empty")
    ws_url = f"{scheme}://{host}"

    params = {
        "_pk": participant_id,
        "name": participant_name,
        "isHost": "true" if is_host else "false",
    }
    return f"{ws_url}/party/{quote(session_code, safe='')}?{urlencode(params, quote_via=quote)}"


class JamClient:
    """Single logical connection to a relay room.

    Reconnects with exponential backoff when the connection drops and
    gives up with an ``error`` state once the attempt budget is spent.
    Outgoing messages are best effort: anything sent while not connected
    is dropped.
    """

    def __init__(
        self,
        config: JamConfig,
        session_code: str,
        participant_id: str,
        participant_name: str,
        is_host: bool,
        on_message: Callable[[JamMessage], None],
        on_connection_change: Callable[[ConnectionState], None],
    ) -> None:
        """Initialize the client.

        Args:
            config: Jam configuration
            session_code: Relay room to join
            participant_id: Our id within the session
            participant_name: Display name announced on join
            is_host: Host flag announced on join
            on_message: Called for every well-formed inbound message
            on_connection_change: Called when the connection state changes
        """
        self.config = config
        self.session_code = session_code
        self.participant_id = participant_id
        self.participant_name = participant_name
        self.is_host = is_host
        self._on_message = on_message
        self._on_connection_change = on_connection_change

        self._websocket: ClientConnection | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._open_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._reconnect_attempts = 0
        self._state = ConnectionState.DISCONNECTED

    @property
    def url(self) -> str:
        return build_relay_url(
            self.config.resolved_server(),
            self.session_code,
            self.participant_id,
            self.participant_name,
            self.is_host,
        )

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    async def connect(self) -> None:
        """Connect to the relay, resetting the reconnection budget.

        Joins a handshake that is already in flight instead of opening a
        second connection.

        Raises:
            JamConnectionError: If the relay URL cannot be built or is rejected
                as invalid. Network failures are retried instead.
        """
        if self._state == ConnectionState.CONNECTED:
            logger.debug("Already connected", session_code=self.session_code)
            return

        self._cancel_reconnect()
        self._reconnect_attempts = 0
        await self._open()

    async def _open(self) -> None:
        self._set_state(ConnectionState.CONNECTING)

        task = self._open_task
        if task is None or task.done():
            task = self._open_task = asyncio.create_task(self._establish())

        # Shielded so a cancelled retry does not abort a handshake that
        # connect() is also waiting on
        await asyncio.shield(task)

    async def _establish(self) -> None:
        if self._state == ConnectionState.DISCONNECTED:
            return

        try:
            url = self.url
            logger.info("Connecting to relay", url=url)
            websocket = await websockets.connect(url)
        except (websockets.InvalidURI, ValueError) as e:
            self._set_state(ConnectionState.ERROR)
            logger.error("Invalid relay configuration", error=str(e))
            raise JamConnectionError(str(e)) from e
        except (OSError, TimeoutError, websockets.exceptions.WebSocketException) as e:
            logger.warning(
                "Failed to reach relay",
                error=str(e),
                attempt=self._reconnect_attempts,
            )
            self._handle_disconnect()
            return

        if self._state == ConnectionState.DISCONNECTED or self._websocket is not None:
            # disconnect() won the race, or a socket is already in use
            with contextlib.suppress(Exception):
                await websocket.close()
            return

        self._websocket = websocket
        self._reconnect_attempts = 0
        self._set_state(ConnectionState.CONNECTED)
        self._reader_task = asyncio.create_task(self._read_loop(websocket))

        await self.send(
            JoinMessage(
                sender_id=self.participant_id,
                name=self.participant_name,
                is_host=self.is_host,
            )
        )

    async def _read_loop(self, websocket: ClientConnection) -> None:
        """Deliver inbound frames until the connection closes."""
        try:
            async for raw in websocket:
                self._handle_frame(raw)
        except websockets.ConnectionClosed as e:
            logger.info("Relay connection closed", reason=str(e))
        except Exception as e:
            logger.exception("Relay read error", error=str(e))

        if websocket is not self._websocket:
            return

        self._websocket = None
        self._reader_task = None
        self._handle_disconnect()

    def _handle_frame(self, raw: str | bytes) -> None:
        message = parse_message(raw)
        if message is None:
            return

        try:
            self._on_message(message)
        except Exception as e:
            logger.exception("Message handler error", type=message.type, error=str(e))

    def _handle_disconnect(self) -> None:
        if self._state == ConnectionState.DISCONNECTED:
            return

        if self._reconnect_attempts < self.config.max_reconnect_attempts:
            self._reconnect_attempts += 1
            delay_ms = reconnect_delay(self._reconnect_attempts, self.config.reconnect_delay_base_ms)
            self._set_state(ConnectionState.CONNECTING)
            logger.warning(
                "Scheduling reconnect",
                attempt=self._reconnect_attempts,
                max_attempts=self.config.max_reconnect_attempts,
                delay_ms=delay_ms,
            )
            self._schedule_reconnect(delay_ms)
        else:
            logger.error(
                "Giving up on relay connection",
                attempts=self._reconnect_attempts,
            )
            self._set_state(ConnectionState.ERROR)

    def _schedule_reconnect(self, delay_ms: int) -> None:
        self._cancel_reconnect()
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay_ms))

    async def _reconnect_after(self, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000)
        self._reconnect_task = None

        if self._state == ConnectionState.DISCONNECTED:
            return

        try:
            await self._open()
        except JamConnectionError:
            # Already moved to the error state
            pass

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return

        self._state = state
        logger.debug("Connection state changed", state=state.value)
        self._on_connection_change(state)

    async def send(self, message: JamMessage) -> None:
        """Send a message if connected; drop it otherwise."""
        if self._state != ConnectionState.CONNECTED or self._websocket is None:
            logger.debug("Dropping message while not connected", type=message.type)
            return

        try:
            await self._websocket.send(encode_message(message))
        except websockets.ConnectionClosed:
            logger.debug("Dropping message on closed connection", type=message.type)

    async def disconnect(self) -> None:
        """Leave the room and stop reconnecting.

        Pending retries are cancelled before the first await, so no
        reconnection can happen after this call starts.
        """
        self._cancel_reconnect()
        was_connected = self._state == ConnectionState.CONNECTED
        self._set_state(ConnectionState.DISCONNECTED)

        websocket, self._websocket = self._websocket, None
        reader_task, self._reader_task = self._reader_task, None
        if reader_task and not reader_task.done():
            reader_task.cancel()

        if websocket is not None:
            if was_connected:
                with contextlib.suppress(websockets.ConnectionClosed):
                    await websocket.send(encode_message(LeaveMessage(sender_id=self.participant_id)))

            with contextlib.suppress(Exception):
                await websocket.close()

        if reader_task:
            with contextlib.suppress(asyncio.CancelledError):
                await reader_task

        open_task, self._open_task = self._open_task, None
        if open_task and not open_task.done():
            # The handshake sees the disconnected state and closes its socket
            with contextlib.suppress(JamConnectionError):
                await asyncio.shield(open_task)

        logger.info("Disconnected from relay", session_code=self.session_code)
