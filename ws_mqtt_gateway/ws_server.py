"""
WebSocket Server for browser clients.

Handles:
- FastAPI WebSocket endpoint at / and /ws
- Registering every accepted connection with the ClientRegistry
- Welcome message on connect
- Reading frames in order and forwarding them to the message callback
- Health endpoint and optional static web assets
"""

import logging
import os
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from .messages import encode, utc_timestamp, welcome_message
from .registry import ClientConnection, ClientRegistry, ConnectionState

logger = logging.getLogger(__name__)


class WebSocketServer:
    """
    WebSocket server accepting browser connections.

    Features:
    - One ClientConnection per socket, registered for its lifetime
    - Per-connection ordered message forwarding
    - Stats/health endpoint
    """

    def __init__(
        self,
        registry: ClientRegistry,
        on_message: Optional[Callable[[str, str], Awaitable[None]]] = None,
        on_connected: Optional[Callable[[str], Awaitable[None]]] = None,
        on_disconnected: Optional[Callable[[str], Awaitable[None]]] = None,
        get_status: Optional[Callable[[], dict]] = None,
        web_root: Optional[str] = None,
    ):
        """
        Initialize WebSocket server.

        Args:
            registry: Registry that tracks connected clients
            on_message: Callback (connection_id, raw_text) for each frame
            on_connected: Callback when a client connects
            on_disconnected: Callback when a client disconnects
            get_status: Stats reported by /health instead of the server's own
            web_root: Directory of static web assets to serve, if any
        """
        self.registry = registry
        self.on_message = on_message
        self.on_connected = on_connected
        self.on_disconnected = on_disconnected
        self.get_status = get_status

        # Statistics
        self._total_messages = 0
        self._total_connections = 0

        # FastAPI app
        self.app = FastAPI(title="WebSocket MQTT Gateway")

        # Add CORS middleware
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        # Register routes
        self._setup_routes()

        if web_root:
            self._mount_static(web_root)

    def _setup_routes(self):
        """Set up FastAPI routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            if self.get_status:
                return {"status": "ok", **self.get_status()}
            return {
                "status": "ok",
                "ws_server": self.get_stats(),
                "registry": self.registry.get_stats(),
            }

        @self.app.websocket("/")
        async def websocket_root(websocket: WebSocket):
            await self._handle_websocket(websocket)

        @self.app.websocket("/ws")
        async def websocket_ws(websocket: WebSocket):
            await self._handle_websocket(websocket)

    def _mount_static(self, web_root: str) -> None:
        if not os.path.isdir(web_root):
            logger.warning(f"WEB_ROOT {web_root} is not a directory, static files disabled")
            return
        self.app.mount("/", StaticFiles(directory=web_root, html=True), name="static")
        logger.info(f"Serving static files from {web_root}")

    async def _handle_websocket(self, websocket: WebSocket) -> None:
        """Handle incoming WebSocket connection."""
        await websocket.accept()

        connection_id = self.registry.next_connection_id()
        remote = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else None
        conn = ClientConnection(connection_id, websocket, remote=remote)
        self.registry.register(conn)
        self._total_connections += 1

        logger.info(f"Client connected: {connection_id} from {remote}")

        try:
            await conn.send_text(encode(welcome_message(utc_timestamp())))
            if self.on_connected:
                await self.on_connected(connection_id)
            await self._receive_messages(conn)
        except WebSocketDisconnect:
            logger.info(f"Client disconnected: {connection_id}")
        except Exception as e:
            logger.error(f"Error handling client {connection_id}: {e}")
        finally:
            # Clean up
            conn.state = ConnectionState.CLOSED
            self.registry.unregister(conn)
            if self.on_disconnected:
                try:
                    await self.on_disconnected(connection_id)
                except Exception as e:
                    logger.error(f"Error in disconnect callback: {e}")

    async def _receive_messages(self, conn: ClientConnection) -> None:
        """Receive and process messages from a client, one at a time.

        Stops once the registry drops the connection after a failed send.
        """
        websocket, connection_id = conn.websocket, conn.connection_id
        while conn.is_open:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            if not conn.is_open:
                break

            data = message.get("text")
            if data is None:
                data = (message.get("bytes") or b"").decode("utf-8", errors="replace")
            self._total_messages += 1

            if not self.on_message:
                continue
            try:
                await self.on_message(connection_id, data)
            except Exception as e:
                logger.error(f"Error in message callback: {e}")

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            "total_connections": self._total_connections,
            "total_messages": self._total_messages,
        }
