# websocket_manager.py

from typing import List
from fastapi import WebSocket
import logging

logger = logging.getLogger(__name__)

class ConnectionManager:
    def __init__(self):
        # Staff screens (POS terminals, kitchen) receive new web orders
        self.staff_connections: List[WebSocket] = []

    async def connect_staff(self, websocket: WebSocket):
        await websocket.accept()
        self.staff_connections.append(websocket)
        logger.info(f"Staff WebSocket connected ({len(self.staff_connections)} open)")

    def disconnect_staff(self, websocket: WebSocket):
        if websocket in self.staff_connections:
            self.staff_connections.remove(websocket)

    async def broadcast_staff(self, message: dict):
        """Sends a message to every staff screen, dropping dead connections"""
        to_remove = []
        for connection in self.staff_connections:
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.info(f"Dropping staff WebSocket: {e}")
                to_remove.append(connection)

        for dead_conn in to_remove:
            self.disconnect_staff(dead_conn)

# Global instance
manager = ConnectionManager()
