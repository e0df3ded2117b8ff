"""IPC server implementation using Unix domain sockets."""

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional, Set

from pydantic import BaseModel, ValidationError

from .ipc_models import (
    AckResponse,
    AnswerWithContextCommand,
    ClearHistoryCommand,
    CommandWrapper,
    ContentResponse,
    ErrorResponse,
    GenerateContentCommand,
    GenerateSummaryCommand,
    GetStatusCommand,
    InitializeEngineCommand,
    InitResponse,
    RefineTextCommand,
    ResponseWrapper,
    ShutdownCommand,
    ShutdownEngineCommand,
    StateNotification,
    StatusResponse,
    SubscribeCommand,
    TextResponse,
    TranscribeChunkCommand,
    TranscribeFileCommand,
    TranscriptResponse,
)
from .service import EngineService
from .state import EngineKind, EngineState

logger = logging.getLogger(__name__)

# Hex-encoded audio segments make commands large: 16 MB covers several
# minutes of 16 kHz mono PCM
MAX_MESSAGE_SIZE = 16 * 1024 * 1024
MESSAGE_TERMINATOR = b"\n"

# Non-subscribed clients are dropped after this long without a command
CLIENT_IDLE_TIMEOUT = 30.0


class IPCServer:
    """Handles IPC communication over Unix domain socket."""

    def __init__(
        self,
        socket_path: Path,
        service: EngineService,
        shutdown_event: asyncio.Event,
    ):
        """Initialize the IPC server.

        Args:
            socket_path: Path to the Unix domain socket
            service: Engine service handling every command
            shutdown_event: Event to signal daemon shutdown
        """
        self.socket_path = socket_path
        self.service = service
        self.shutdown_event = shutdown_event

        self._server: Optional[asyncio.Server] = None
        self._client_tasks: Set[asyncio.Task] = set()
        self._subscribers: Set[asyncio.StreamWriter] = set()
        self._broadcast_tasks: Set[asyncio.Task] = set()

        # Register for engine state updates
        self.service.add_state_observer(self._on_state_change)

    def _on_state_change(
        self, kind: EngineKind, new_state: EngineState, error: Optional[str]
    ) -> None:
        """Handle engine state change notifications."""
        if not self._subscribers:
            return

        try:
            notification = ResponseWrapper(
                root=StateNotification(engine=kind, state=new_state, last_error=error)
            )
            # Broadcast in a task so the engine transition is never blocked
            task = asyncio.create_task(self._broadcast_notification(notification))
            self._broadcast_tasks.add(task)
            task.add_done_callback(self._broadcast_tasks.discard)
        except Exception as e:
            logger.error(f"Error preparing state notification: {e}")

    async def _broadcast_notification(self, notification: ResponseWrapper) -> None:
        """Broadcast a notification to all subscribers."""
        if not self._subscribers:
            return

        data = notification.model_dump_json().encode("utf-8") + MESSAGE_TERMINATOR

        # Copy set to avoid modification during iteration
        subscribers = list(self._subscribers)

        for writer in subscribers:
            if writer.is_closing():
                self._subscribers.discard(writer)
                continue

            try:
                writer.write(data)
                await writer.drain()
            except Exception as e:
                logger.warning(f"Error broadcasting to subscriber: {e}")
                self._subscribers.discard(writer)

    async def _send_response(self, writer: asyncio.StreamWriter, response: BaseModel) -> None:
        """Send a response to a client.

        Args:
            writer: StreamWriter to send through
            response: Response model to send
        """
        if not isinstance(response, ResponseWrapper):
            response = ResponseWrapper(root=response)

        try:
            response_json = response.model_dump_json()
            writer.write(response_json.encode("utf-8") + MESSAGE_TERMINATOR)
            await writer.drain()
            logger.debug(f"Sent response: {response_json[:200]}")
        except Exception as e:
            logger.error(f"Error sending response: {e}")

    async def _handle_initialize(self, command: InitializeEngineCommand) -> InitResponse:
        logger.info(f"Handling initialize_engine command ({command.engine.value})")
        result = await self.service.initialize_engine(command.engine)
        return InitResponse(engine=command.engine, ready=result.ready, error=result.error)

    async def _handle_transcribe_chunk(
        self, command: TranscribeChunkCommand
    ) -> TranscriptResponse:
        logger.debug(f"Handling transcribe_chunk command ({len(command.audio) // 2} bytes)")
        transcript = await self.service.transcribe_chunk(command.audio, command.sample_rate)
        return TranscriptResponse(transcript=transcript)

    async def _handle_transcribe_file(
        self, command: TranscribeFileCommand
    ) -> TranscriptResponse:
        logger.info(f"Handling transcribe_file command ({command.path})")
        transcript = await self.service.transcribe_file(command.path)
        return TranscriptResponse(transcript=transcript)

    async def _handle_status(self, command: GetStatusCommand) -> StatusResponse:
        logger.debug("Handling get_status command")
        kinds: List[EngineKind] = (
            [command.engine] if command.engine is not None else list(EngineKind)
        )
        return StatusResponse(engines=[self.service.get_status(kind) for kind in kinds])

    async def _handle_subscribe(self, writer: asyncio.StreamWriter) -> None:
        """Subscribe a client and send it the current state of every engine."""
        logger.info("Handling subscribe command")
        self._subscribers.add(writer)

        for kind in EngineKind:
            status = self.service.get_status(kind)
            await self._send_response(
                writer,
                StateNotification(
                    engine=kind, state=status.state, last_error=status.last_error
                ),
            )

    async def _handle_shutdown(self, writer: asyncio.StreamWriter) -> None:
        logger.info("Handling shutdown command")
        await self._send_response(writer, AckResponse())
        # Signal shutdown; engines are stopped by the daemon's main loop
        self.shutdown_event.set()

    async def _dispatch(self, command: BaseModel) -> BaseModel:
        """Run a request/response command and build its response."""
        if isinstance(command, InitializeEngineCommand):
            return await self._handle_initialize(command)
        elif isinstance(command, TranscribeChunkCommand):
            return await self._handle_transcribe_chunk(command)
        elif isinstance(command, TranscribeFileCommand):
            return await self._handle_transcribe_file(command)
        elif isinstance(command, RefineTextCommand):
            logger.info("Handling refine_text command")
            return TextResponse(text=await self.service.refine_text(command.text))
        elif isinstance(command, AnswerWithContextCommand):
            logger.info("Handling answer_with_context command")
            answer = await self.service.answer_with_context(
                command.question, command.conversation_id, command.context_documents
            )
            return TextResponse(text=answer)
        elif isinstance(command, GenerateSummaryCommand):
            logger.info("Handling generate_summary command")
            summary = await self.service.generate_summary(
                command.context_documents, command.conversation_id
            )
            return TextResponse(text=summary)
        elif isinstance(command, GenerateContentCommand):
            logger.info("Handling generate_content command")
            content = await self.service.generate_content(command.request)
            return ContentResponse(content=content)
        elif isinstance(command, ClearHistoryCommand):
            logger.info("Handling clear_history command")
            self.service.clear_history(command.conversation_id)
            return AckResponse()
        elif isinstance(command, GetStatusCommand):
            return await self._handle_status(command)
        elif isinstance(command, ShutdownEngineCommand):
            logger.info(f"Handling shutdown_engine command ({command.engine.value})")
            await self.service.shutdown_engine(command.engine)
            return AckResponse()

        logger.error(f"Unhandled command type: {type(command)}")
        return ErrorResponse(message="Internal server error")

    async def _handle_command(self, writer: asyncio.StreamWriter, message: str) -> bool:
        """Parse and handle a command message.

        Args:
            writer: StreamWriter to send responses through
            message: Command message to parse and handle

        Returns:
            True if connection should be kept alive, False to close it
        """
        try:
            command = CommandWrapper.model_validate_json(message)
        except ValidationError as e:
            logger.error(f"Invalid command format: {e}")
            await self._send_response(
                writer, ErrorResponse(message=f"Invalid command format: {e}")
            )
            return True
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON: {e}")
            await self._send_response(
                writer, ErrorResponse(message=f"Invalid JSON format: {e}")
            )
            return True

        logger.debug(f"Parsed command: {command.root.command}")

        try:
            if isinstance(command.root, ShutdownCommand):
                await self._handle_shutdown(writer)
                return False
            elif isinstance(command.root, SubscribeCommand):
                await self._handle_subscribe(writer)
                return True

            response = await self._dispatch(command.root)

        except Exception as e:
            logger.exception(f"Error handling {command.root.command} command")
            response = ErrorResponse(message=f"{type(e).__name__}: {e}")

        await self._send_response(writer, response)
        return True

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handle a client connection.

        Args:
            reader: StreamReader for the client
            writer: StreamWriter for the client
        """
        peer = writer.get_extra_info("peername") or "Unknown"
        logger.info(f"Client connected: {peer}")

        task = asyncio.current_task()
        assert task is not None  # for type checking
        self._client_tasks.add(task)

        try:
            while True:
                try:
                    # Subscribers may stay silent forever
                    timeout = None if writer in self._subscribers else CLIENT_IDLE_TIMEOUT

                    data = await asyncio.wait_for(
                        reader.readuntil(MESSAGE_TERMINATOR), timeout=timeout
                    )

                    if not data:  # EOF
                        logger.info(f"Client disconnected (EOF): {peer}")
                        break

                    message = data.rstrip(MESSAGE_TERMINATOR).decode("utf-8")
                    if not message.strip():
                        continue
                    logger.debug(f"Received from {peer}: {message[:200]}")

                    keep_alive = await self._handle_command(writer, message)
                    if not keep_alive:
                        break

                except asyncio.TimeoutError:
                    logger.warning(f"Timeout reading from client {peer}")
                    break
                except asyncio.IncompleteReadError:
                    logger.info(f"Client disconnected (incomplete read): {peer}")
                    break
                except asyncio.LimitOverrunError:
                    logger.warning(f"Message from {peer} exceeds {MAX_MESSAGE_SIZE} bytes")
                    await self._send_response(
                        writer, ErrorResponse(message="Message too large")
                    )
                    break
                except ConnectionError as e:
                    logger.warning(f"Connection error with {peer}: {e}")
                    break
                except asyncio.CancelledError:
                    logger.info(f"Client connection cancelled: {peer}")
                    break
                except Exception as e:
                    logger.exception(f"Error handling client {peer}: {e}")
                    break

        finally:
            self._subscribers.discard(writer)
            logger.info(f"Closing connection with {peer}")
            if not writer.is_closing():
                writer.close()
                try:
                    await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
                except (asyncio.TimeoutError, Exception) as e:
                    logger.warning(f"Error during connection cleanup: {e}")

            self._client_tasks.discard(task)
            logger.debug(f"Connection closed: {peer}")

    async def start(self) -> None:
        """Start the IPC server."""
        if self._server:
            logger.warning("Server already started")
            return

        # Clean up existing socket if needed
        if self.socket_path.exists():
            if self.socket_path.is_socket():
                logger.info(f"Removing existing socket file: {self.socket_path}")
                try:
                    self.socket_path.unlink()
                except OSError as e:
                    logger.error(f"Failed to remove existing socket: {e}")
                    raise
            else:
                logger.error(f"Path exists but is not a socket: {self.socket_path}")
                raise OSError(f"Path exists but is not a socket: {self.socket_path}")

        try:
            self.socket_path.parent.mkdir(parents=True, exist_ok=True)

            self._server = await asyncio.start_unix_server(
                self._handle_client,
                path=str(self.socket_path),
                limit=MAX_MESSAGE_SIZE,
            )

            logger.info(f"IPC server listening on {self.socket_path}")

        except Exception as e:
            logger.error(f"Failed to start IPC server: {e}")
            if self.socket_path.exists():
                self.socket_path.unlink(missing_ok=True)
            raise

    async def stop(self) -> None:
        """Stop the IPC server."""
        if not self._server:
            logger.warning("Server not running")
            return

        logger.info("Stopping IPC server...")
        self.service.remove_state_observer(self._on_state_change)

        # Close subscriber connections first to unblock their read loops
        if self._subscribers:
            logger.info(f"Closing {len(self._subscribers)} subscriber connections...")
            for writer in list(self._subscribers):
                if not writer.is_closing():
                    writer.close()
            self._subscribers.clear()

        self._server.close()

        # wait_closed() waits for open connections, so cancel clients first
        if self._client_tasks:
            logger.info(f"Cancelling {len(self._client_tasks)} client tasks...")
            for task in list(self._client_tasks):
                if not task.done():
                    task.cancel()
            await asyncio.gather(*self._client_tasks, return_exceptions=True)
            self._client_tasks.clear()

        await self._server.wait_closed()
        self._server = None

        logger.debug(f"Removing socket file: {self.socket_path}")
        try:
            self.socket_path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Error removing socket file: {e}")

        logger.info("IPC server stopped")
