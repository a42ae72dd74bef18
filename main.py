# main.py

import logging
import sys
from contextlib import asynccontextmanager

# --- FastAPI & Uvicorn ---
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
import uvicorn

from dotenv import load_dotenv

# .env must be loaded before models reads DATABASE_URL
load_dotenv()

# --- Local imports ---
from models import create_db_tables
from exceptions import PosError
from notification_manager import create_admin_bot, StaffNotifier
from web_order_service import StatusNotifier
from websocket_manager import manager
from admin_cash import router as shifts_router
from admin_order_management import router as orders_router
from admin_inventory import router as inventory_router
from admin_reports import router as day_router
from web_api import router as web_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up...")
    await create_db_tables()
    app.state.admin_bot = create_admin_bot()
    app.state.staff_notifier = StaffNotifier(app.state.admin_bot)
    app.state.status_notifier = StatusNotifier()
    yield
    logger.info("Shutting down...")
    if app.state.admin_bot:
        await app.state.admin_bot.session.close()


app = FastAPI(lifespan=lifespan)

app.include_router(shifts_router)
app.include_router(orders_router)
app.include_router(inventory_router)
app.include_router(day_router)
app.include_router(web_router)


@app.exception_handler(PosError)
async def pos_error_handler(request: Request, exc: PosError):
    logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


@app.websocket("/staff/ws")
async def staff_websocket(websocket: WebSocket):
    await manager.connect_staff(websocket)
    try:
        while True:
            # Keep-alive pings from the staff screen
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect_staff(websocket)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, stream=sys.stdout)
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
