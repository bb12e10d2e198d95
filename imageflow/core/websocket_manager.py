"""WebSocket Manager for real-time run monitoring."""

import asyncio
import json
import uuid
from datetime import datetime
from typing import Dict, Set, Any, Optional
from queue import Queue, Empty
from fastapi import WebSocket, WebSocketDisconnect

from ..models.core import RetryEvent, RunEvent
from .logging import get_logger

logger = get_logger(__name__)


# Subscribing to this id delivers the events of every run
ALL_RUNS = "*"


class WebSocketConnection:
    """Represents a WebSocket connection with metadata."""

    def __init__(self, websocket: WebSocket, connection_id: str):
        self.websocket = websocket
        self.connection_id = connection_id
        self.connected_at = datetime.utcnow()
        self.subscribed_runs: Set[str] = set()
        self.is_active = True


class WebSocketManager:
    """Manager for WebSocket connections and event broadcasting.

    Runs execute on worker threads, so they never await anything here:
    they call the ``queue_*`` methods and the broadcast processor task
    delivers the events on the event loop.
    """

    def __init__(self, max_connections: int = 100):
        """Initialize the WebSocket manager."""
        self.max_connections = max_connections
        self._connections: Dict[str, WebSocketConnection] = {}
        self._run_subscribers: Dict[str, Set[str]] = {}  # run_id -> set of connection_ids
        self._broadcast_lock = asyncio.Lock()

        # Thread-safe queue for broadcast messages from worker threads
        self._broadcast_queue: Queue = Queue()
        self._queue_processor_task: Optional[asyncio.Task] = None
        self._processing_broadcasts = False

        logger.info("WebSocketManager initialized")

    async def connect(self, websocket: WebSocket) -> Optional[str]:
        """
        Accept a new WebSocket connection.

        Args:
            websocket: The WebSocket connection

        Returns:
            Connection ID for the new connection, or None if the limit is reached
        """
        if self.get_connection_count() >= self.max_connections:
            logger.warning("WebSocket connection limit reached, refusing connection")
            await websocket.close(code=1013)
            return None

        await websocket.accept()

        connection_id = str(uuid.uuid4())
        self._connections[connection_id] = WebSocketConnection(websocket, connection_id)

        logger.info(f"WebSocket connection established: {connection_id}")

        await self._send_to_connection(connection_id, {
            "event_type": "connection_established",
            "connection_id": connection_id,
            "timestamp": datetime.utcnow().isoformat(),
            "message": "WebSocket connection established successfully"
        })

        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        """Handle WebSocket disconnection and cleanup."""
        if connection_id not in self._connections:
            return

        connection = self._connections[connection_id]
        connection.is_active = False

        for run_id in list(connection.subscribed_runs):
            await self.unsubscribe_from_run(connection_id, run_id)

        del self._connections[connection_id]

        logger.info(f"WebSocket connection disconnected and cleaned up: {connection_id}")

    async def subscribe_to_run(self, connection_id: str, run_id: str) -> bool:
        """
        Subscribe a connection to the events of a run (or of all runs via ``*``).

        Returns:
            True if subscription was successful, False otherwise
        """
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            logger.warning(f"Attempted to subscribe unknown or inactive connection: {connection_id}")
            return False

        connection.subscribed_runs.add(run_id)
        self._run_subscribers.setdefault(run_id, set()).add(connection_id)

        logger.info(f"Connection {connection_id} subscribed to run {run_id}")

        await self._send_to_connection(connection_id, {
            "event_type": "subscription_confirmed",
            "run_id": run_id,
            "timestamp": datetime.utcnow().isoformat(),
            "message": f"Subscribed to workflow run {run_id}"
        })

        return True

    async def unsubscribe_from_run(self, connection_id: str, run_id: str) -> bool:
        """Unsubscribe a connection from a run."""
        connection = self._connections.get(connection_id)
        if connection is None:
            return False

        connection.subscribed_runs.discard(run_id)

        if run_id in self._run_subscribers:
            self._run_subscribers[run_id].discard(connection_id)
            if not self._run_subscribers[run_id]:
                del self._run_subscribers[run_id]

        logger.info(f"Connection {connection_id} unsubscribed from run {run_id}")
        return True

    async def broadcast_workflow_event(self, run_id: str, event_type: str, data: Dict[str, Any]) -> None:
        """
        Broadcast an event to the subscribers of a run and to wildcard subscribers.

        Args:
            run_id: ID of the workflow run
            event_type: Type of event
            data: Event data
        """
        subscribers = self._run_subscribers.get(run_id, set()) | self._run_subscribers.get(ALL_RUNS, set())
        if not subscribers:
            logger.debug(f"No subscribers for run {run_id}, skipping broadcast")
            return

        async with self._broadcast_lock:
            event = {
                "event_type": event_type,
                "run_id": run_id,
                "timestamp": datetime.utcnow().isoformat(),
                "data": data
            }

            disconnected_connections = []
            for connection_id in subscribers:
                success = await self._send_to_connection(connection_id, event)
                if not success:
                    disconnected_connections.append(connection_id)

            for connection_id in disconnected_connections:
                await self.disconnect(connection_id)

            logger.debug(f"Broadcasted {event_type} event for run {run_id} to {len(subscribers)} subscribers")

    async def broadcast_run_event(self, event: RunEvent) -> None:
        """Broadcast a runner progress event."""
        await self.broadcast_workflow_event(
            event.run_id or "",
            event.event_type.value,
            event.model_dump(mode="json", exclude={"event_type", "run_id"})
        )

    async def broadcast_retry_event(self, run_id: str, event: RetryEvent) -> None:
        """Broadcast a backend retry notice."""
        await self.broadcast_workflow_event(run_id, "retry_scheduled", event.model_dump(mode="json"))

    async def _send_to_connection(self, connection_id: str, data: Dict[str, Any]) -> bool:
        """
        Send data to a specific WebSocket connection.

        Returns:
            True if message was sent successfully, False otherwise
        """
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            return False

        try:
            await connection.websocket.send_text(json.dumps(data, default=str))
            return True

        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected during send: {connection_id}")
            connection.is_active = False
            return False
        except Exception as e:
            logger.error(f"Error sending WebSocket message to {connection_id}: {str(e)}")
            connection.is_active = False
            return False

    async def send_to_connection(self, connection_id: str, data: Dict[str, Any]) -> bool:
        """Public method to send data to a specific connection."""
        return await self._send_to_connection(connection_id, data)

    def get_connection_count(self) -> int:
        """Get the total number of active connections."""
        return len([conn for conn in self._connections.values() if conn.is_active])

    def get_run_subscriber_count(self, run_id: str) -> int:
        """Get the number of subscribers for a specific run."""
        return len(self._run_subscribers.get(run_id, set()))

    def get_connection_info(self) -> Dict[str, Any]:
        """Get information about all connections."""
        active_connections = []
        for conn_id, conn in self._connections.items():
            if conn.is_active:
                active_connections.append({
                    "connection_id": conn_id,
                    "connected_at": conn.connected_at.isoformat(),
                    "subscribed_runs": sorted(conn.subscribed_runs)
                })

        return {
            "total_connections": len(active_connections),
            "connections": active_connections,
            "run_subscribers": {
                run_id: len(subscribers)
                for run_id, subscribers in self._run_subscribers.items()
            }
        }

    def start_broadcast_processor(self):
        """Start the broadcast queue processor."""
        if not self._processing_broadcasts:
            self._processing_broadcasts = True
            self._queue_processor_task = asyncio.create_task(self._process_broadcast_queue())
            logger.info("WebSocket broadcast processor started")

    def stop_broadcast_processor(self):
        """Stop the broadcast queue processor."""
        self._processing_broadcasts = False
        if self._queue_processor_task:
            self._queue_processor_task.cancel()
            logger.info("WebSocket broadcast processor stopped")

    async def _process_broadcast_queue(self):
        """Process broadcast messages queued by worker threads."""
        while self._processing_broadcasts:
            try:
                try:
                    broadcast_type, args = self._broadcast_queue.get_nowait()
                except Empty:
                    await asyncio.sleep(0.1)
                    continue

                if broadcast_type == "run_event":
                    await self.broadcast_run_event(*args)
                elif broadcast_type == "retry_event":
                    await self.broadcast_retry_event(*args)
                self._broadcast_queue.task_done()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error processing broadcast queue: {str(e)}")
                await asyncio.sleep(0.1)

    def pending_broadcasts(self) -> int:
        return self._broadcast_queue.qsize()

    def queue_run_event(self, event: RunEvent) -> None:
        """Queue a runner event for broadcasting from a worker thread."""
        self._broadcast_queue.put(("run_event", (event,)))

    def queue_retry_event(self, run_id: str, event: RetryEvent) -> None:
        """Queue a retry notice for broadcasting from a worker thread."""
        self._broadcast_queue.put(("retry_event", (run_id, event)))
