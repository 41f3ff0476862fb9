"""REST API server for the Android TV bridge.

Translates stateless HTTP calls into operations on the device registry.
Every response carries ``success``; failures add ``error`` and use a
status code that matches the failure kind. Bodies may be JSON or form
encoded.

    POST /pair/start      <- {"deviceId": "tv1", "host": "192.168.1.50", "deviceName": "Hubitat"}
    POST /pair/complete   <- {"deviceId": "tv1", "code": "AB12CD"}
    POST /connect         <- {"deviceId": "tv1", "host": "192.168.1.50", "certificate": "..."}
    POST /disconnect      <- {"deviceId": "tv1"}
    POST /unpair          <- {"deviceId": "tv1"}
    POST /key             <- {"deviceId": "tv1", "keyCode": 26, "keyName": "POWER"}
    POST /app/launch      <- {"deviceId": "tv1", "appUrl": "https://www.netflix.com/title"}
    POST /text            <- {"deviceId": "tv1", "text": "hello"}
    GET  /status/{deviceId}
    GET  /health
    GET  /devices
    POST /test            <- any JSON body, echoed back
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from atvbridge import __version__
from atvbridge.config.settings import Settings
from atvbridge.domain.errors import BridgeError, ValidationError
from atvbridge.domain.models import DeviceSummary
from atvbridge.registry.registry import DeviceRegistry
from atvbridge.remote.base import CertificateBundle, RemoteSession
from atvbridge.utils.logging import log_loop_exception

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PairStartRequest(_CamelModel):
    device_id: str | None = None
    host: str | None = Field(default=None, description="TV IPv4 address")
    device_name: str | None = Field(default=None, description="Name shown on the TV")


class PairCompleteRequest(_CamelModel):
    device_id: str | None = None
    code: str | None = Field(default=None, description="6-character code shown on the TV")


class ConnectRequest(_CamelModel):
    device_id: str | None = None
    host: str | None = None
    certificate: str | None = Field(default=None, description="Material from /pair/complete")


class DeviceRequest(_CamelModel):
    device_id: str | None = None


class KeyRequest(_CamelModel):
    device_id: str | None = None
    key_code: int | str | None = Field(default=None, description="Android KEYCODE_* value")
    key_name: str | None = None


class AppLaunchRequest(_CamelModel):
    device_id: str | None = None
    app_url: str | None = None


class TextRequest(_CamelModel):
    device_id: str | None = None
    text: str | None = None


class BridgeResponse(_CamelModel):
    success: bool = True
    message: str = ""
    device_id: str | None = None


class PairStartResponse(BridgeResponse):
    code_displayed: bool = False


class PairCompleteResponse(BridgeResponse):
    certificate: str
    private_key: str


class StatusResponse(_CamelModel):
    success: bool = True
    device_id: str
    connected: bool = False
    last_activity: int | None = None


class HealthResponse(_CamelModel):
    status: str = "ok"
    connected_devices: int = 0
    pairing_in_progress: int = 0
    total_devices: int = 0
    uptime: int = 0


class DevicesResponse(_CamelModel):
    devices: list[DeviceSummary] = Field(default_factory=list)
    count: int = 0


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

ModelT = TypeVar("ModelT", bound=BaseModel)


async def read_body(request: Request) -> dict[str, Any]:
    """Read a JSON or form-encoded body as a dict.

    Hub drivers send either encoding. An empty body reads as ``{}``.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}

    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        raise ValidationError("Invalid request body") from None
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def body_of(model: type[ModelT]) -> Callable[[Request], Awaitable[ModelT]]:
    """Dependency that validates the request body into ``model``."""

    async def dependency(request: Request) -> ModelT:
        data = await read_body(request)
        try:
            return model.model_validate(data)
        except ValueError:
            raise ValidationError("Invalid request body") from None

    return dependency


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def build_registry(settings: Settings) -> DeviceRegistry:
    """Create a registry wired to androidtvremote2 sessions."""
    from atvbridge.remote.androidtv import create_session

    def factory(host: str, name: str, certificate: CertificateBundle | None) -> RemoteSession:
        return create_session(
            host,
            name,
            certificate,
            pairing_port=settings.remote.pairing_port,
            remote_port=settings.remote.remote_port,
        )

    return DeviceRegistry(
        session_factory=factory,
        client_name=settings.remote.client_name,
        session_start_timeout=settings.timeouts.session_start,
        code_display_timeout=settings.timeouts.code_display,
        pairing_complete_timeout=settings.timeouts.pairing_complete,
        connect_timeout=settings.timeouts.connect,
        pairing_ttl=settings.registry.pairing_ttl,
    )


def get_registry(request: Request) -> DeviceRegistry:
    return request.app.state.registry


def create_app(
    settings: Settings | None = None,
    registry: DeviceRegistry | None = None,
) -> FastAPI:
    """Create the bridge REST API application.

    Args:
        settings: Bridge settings. Defaults are used if None.
        registry: Optional pre-configured DeviceRegistry (for testing).
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        asyncio.get_running_loop().set_exception_handler(log_loop_exception)

        reg = app.state.registry
        if reg is None:
            reg = build_registry(settings)
            app.state.registry = reg

        async def _prune_loop() -> None:
            while True:
                await asyncio.sleep(settings.registry.prune_interval)
                try:
                    await reg.prune_expired_pairings()
                except Exception:
                    logger.exception("Pairing cleanup failed")

        prune_task = asyncio.create_task(_prune_loop())
        logger.info(
            "Android TV bridge started on %s:%d", settings.server.host, settings.server.port
        )
        yield
        prune_task.cancel()
        try:
            await prune_task
        except asyncio.CancelledError:
            pass
        await reg.close()
        logger.info("Android TV bridge stopped")

    app = FastAPI(
        title="Android TV Bridge",
        description="HTTP bridge for Android TV pairing and remote control",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.registry = registry

    # -------------------------------------------------------------------
    # Request logging and error envelopes
    # -------------------------------------------------------------------

    @app.middleware("http")
    async def log_requests(request: Request, call_next):  # type: ignore[no-untyped-def]
        logger.info("%s %s", request.method, request.url.path)
        return await call_next(request)

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
        prefix = f"[{exc.device_id}] " if exc.device_id else ""
        logger.error("%s%s %s failed: %s", prefix, request.method, request.url.path, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": str(exc)},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.error("%s %s rejected: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Invalid request body"},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("%s %s crashed", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(exc) or exc.__class__.__name__},
        )

    # -------------------------------------------------------------------
    # Pairing
    # -------------------------------------------------------------------

    @app.post("/pair/start")
    async def pair_start(
        request: PairStartRequest = Depends(body_of(PairStartRequest)),
        reg: DeviceRegistry = Depends(get_registry),
    ) -> PairStartResponse:
        displayed = await reg.start_pairing(request.device_id, request.host, request.device_name)
        return PairStartResponse(
            message="Pairing initiated - check TV for 6-digit code",
            device_id=request.device_id,
            code_displayed=displayed,
        )

    @app.post("/pair/complete")
    async def pair_complete(
        request: PairCompleteRequest = Depends(body_of(PairCompleteRequest)),
        reg: DeviceRegistry = Depends(get_registry),
    ) -> PairCompleteResponse:
        certificate = await reg.complete_pairing(request.device_id, request.code)
        return PairCompleteResponse(
            message="Pairing successful",
            device_id=request.device_id,
            certificate=certificate,
            private_key=certificate,
        )

    # -------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------

    @app.post("/connect")
    async def connect(
        request: ConnectRequest = Depends(body_of(ConnectRequest)),
        reg: DeviceRegistry = Depends(get_registry),
    ) -> BridgeResponse:
        created = await reg.connect(request.device_id, request.host, request.certificate)
        return BridgeResponse(
            message="Connected successfully" if created else "Already connected",
            device_id=request.device_id,
        )

    @app.post("/disconnect")
    async def disconnect(
        request: DeviceRequest = Depends(body_of(DeviceRequest)),
        reg: DeviceRegistry = Depends(get_registry),
    ) -> BridgeResponse:
        await reg.disconnect(request.device_id)
        return BridgeResponse(message="Disconnected", device_id=request.device_id)

    @app.post("/unpair")
    async def unpair(
        request: DeviceRequest = Depends(body_of(DeviceRequest)),
        reg: DeviceRegistry = Depends(get_registry),
    ) -> BridgeResponse:
        await reg.unpair(request.device_id)
        return BridgeResponse(
            message="Unpaired from bridge. Also clear Android TV Remote Service data on TV.",
            device_id=request.device_id,
        )

    # -------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------

    @app.post("/key")
    async def send_key(
        request: KeyRequest = Depends(body_of(KeyRequest)),
        reg: DeviceRegistry = Depends(get_registry),
    ) -> BridgeResponse:
        await reg.send_key(request.device_id, request.key_code, request.key_name)
        return BridgeResponse(
            message=f"Sent key: {request.key_name or request.key_code}",
            device_id=request.device_id,
        )

    @app.post("/app/launch")
    async def launch_app(
        request: AppLaunchRequest = Depends(body_of(AppLaunchRequest)),
        reg: DeviceRegistry = Depends(get_registry),
    ) -> BridgeResponse:
        await reg.launch_app(request.device_id, request.app_url)
        return BridgeResponse(message="App launched", device_id=request.device_id)

    @app.post("/text")
    async def send_text(
        request: TextRequest = Depends(body_of(TextRequest)),
        reg: DeviceRegistry = Depends(get_registry),
    ) -> BridgeResponse:
        message = await reg.send_text(request.device_id, request.text)
        return BridgeResponse(message=message, device_id=request.device_id)

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------

    @app.get("/status/{device_id}")
    async def status(device_id: str, reg: DeviceRegistry = Depends(get_registry)) -> StatusResponse:
        current = reg.status(device_id)
        return StatusResponse(
            device_id=device_id,
            connected=current.connected,
            last_activity=current.last_activity,
        )

    @app.get("/health")
    async def health_check(reg: DeviceRegistry = Depends(get_registry)) -> HealthResponse:
        return HealthResponse(**reg.health().model_dump())

    @app.get("/devices")
    async def list_devices(reg: DeviceRegistry = Depends(get_registry)) -> DevicesResponse:
        devices = reg.list_devices()
        return DevicesResponse(devices=devices, count=len(devices))

    @app.post("/test")
    async def echo_body(body: dict[str, Any] = Depends(read_body)) -> dict[str, Any]:
        logger.info("Test body received: %s", body)
        return {
            "success": True,
            "message": "Test successful",
            "receivedBody": body,
            "bodyKeys": list(body),
        }

    return app


# ---------------------------------------------------------------------------
# Standalone entry point
# ---------------------------------------------------------------------------

def main(host: str = "0.0.0.0", port: int = 3000) -> None:
    """Run the bridge server with default settings."""
    settings = Settings()
    uvicorn.run(create_app(settings), host=host, port=port)


if __name__ == "__main__":
    main()
