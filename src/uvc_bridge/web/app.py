"""FastAPI web preview for uvc-bridge.

Read-only: the acquisition loop runs on a background thread for the life of
the application, feeding a JpegSink, and the endpoints only observe it.

    GET /                  minimal HTML page showing the stream
    GET /stream            MJPEG (multipart/x-mixed-replace)
    GET /snapshot.jpg      latest processed frame
    GET /api/properties    last property read-back
    GET /api/stats         tick statistics
    GET /api/health        loop state and last fatal error
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import HTMLResponse, JSONResponse, Response, StreamingResponse

from uvc_bridge.devices import (
    AcquisitionConfig,
    AcquisitionLoop,
    BridgeError,
    DeviceManager,
    JpegSink,
    LoopState,
    OutputSink,
)
from uvc_bridge.drivers.config import DriverConfig, DriverFactory
from uvc_bridge.observability import CaptureStats, get_logger

logger = get_logger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080
DEFAULT_STREAM_FPS = 15
SNAPSHOT_TIMEOUT_S = 5.0
_THREAD_JOIN_TIMEOUT_S = 5.0

LoopFactory = Callable[[OutputSink, CaptureStats], AcquisitionLoop]

_INDEX_HTML = """<!doctype html>
<html>
<head><title>uvc-bridge</title></head>
<body style="background:#111;color:#ddd;font-family:sans-serif">
<h1>uvc-bridge</h1>
<img src="/stream" alt="live stream">
</body>
</html>
"""


class PreviewRunner:
    """Runs one AcquisitionLoop on a daemon thread.

    Attributes:
        sink: Latest frames as JPEG.
        stats: Tick statistics recorded by the loop.
        loop: The loop, created by start().
        error: Message of the fatal error that ended the loop, if any.
    """

    def __init__(self, loop_factory: LoopFactory, max_fps: float | None = None):
        self._loop_factory = loop_factory
        self._max_fps = max_fps
        self.sink = JpegSink()
        self.stats = CaptureStats()
        self.loop: AcquisitionLoop | None = None
        self.error: str | None = None
        self._thread: threading.Thread | None = None

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        self.loop = self._loop_factory(self.sink, self.stats)
        self.stats.device_index = self.loop.config.device_index
        self._thread = threading.Thread(
            target=self._run, name="uvc-acquisition", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the loop, wait for the thread, then release the device."""
        if self.loop is None:
            return
        self.loop.stop()
        if self._thread is not None:
            self._thread.join(timeout=_THREAD_JOIN_TIMEOUT_S)
        try:
            self.loop.shutdown()
        except BridgeError as e:
            logger.warning("Error during preview shutdown", error=str(e))

    def _run(self) -> None:
        if self.loop is None:
            return
        try:
            for _ in self.loop.run(max_fps=self._max_fps):
                pass
        except BridgeError as e:
            self.error = str(e)
            logger.error(
                "Preview acquisition stopped", error=str(e), error_type=type(e).__name__
            )
        except Exception as e:
            self.error = f"{type(e).__name__}: {e}"
            logger.error(
                "Preview acquisition crashed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
        else:
            return
        self._release_after_failure()

    def _release_after_failure(self) -> None:
        """Release the device so health reports the loop as released."""
        if self.loop is None:
            return
        try:
            self.loop.shutdown()
        except BridgeError as e:
            logger.warning("Error releasing after failure", error=str(e))


def make_loop_factory(
    driver_config: DriverConfig, acquisition: AcquisitionConfig
) -> LoopFactory:
    """Factory building a loop over a fresh driver from the given settings."""

    def factory(sink: OutputSink, stats: CaptureStats) -> AcquisitionLoop:
        driver = DriverFactory(driver_config).create_camera_driver()
        return AcquisitionLoop(
            DeviceManager(driver), acquisition, sink=sink, stats=stats
        )

    return factory


def create_app(
    loop_factory: LoopFactory,
    max_fps: float | None = None,
    stream_fps: float = DEFAULT_STREAM_FPS,
) -> FastAPI:
    """Create the preview application.

    Args:
        loop_factory: Called once at startup with the JpegSink and the
            CaptureStats the loop must use.
        max_fps: Acquisition rate cap; None uses the loop's config.
        stream_fps: Rate cap for each MJPEG client.

    Returns:
        FastAPI app; the loop starts and stops with its lifespan.

    Example:
        >>> app = create_app(make_loop_factory(DriverConfig(), AcquisitionConfig()))
        >>> uvicorn.run(app, host="127.0.0.1", port=8080)
    """
    runner = PreviewRunner(loop_factory, max_fps=max_fps)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Starting preview acquisition")
        runner.start()
        yield
        logger.info("Stopping preview acquisition")
        await asyncio.to_thread(runner.stop)

    app = FastAPI(
        title="uvc-bridge",
        description="Read-only preview of the acquisition loop",
        lifespan=lifespan,
    )
    app.state.runner = runner

    @app.get("/", response_class=HTMLResponse)
    async def index() -> HTMLResponse:
        return HTMLResponse(_INDEX_HTML)

    @app.get("/stream")
    async def stream(
        frames: int | None = Query(None, ge=1, description="Stop after N frames"),
    ) -> StreamingResponse:
        """Stream processed frames as MJPEG.

        Usable directly as ``<img src="/stream">``. Each client gets every
        new frame up to ``stream_fps``; slower clients skip frames.
        """
        return StreamingResponse(
            _generate_mjpeg(runner, stream_fps, frames),
            media_type="multipart/x-mixed-replace; boundary=frame",
        )

    @app.get("/snapshot.jpg")
    async def snapshot() -> Response:
        frame = await asyncio.to_thread(
            runner.sink.wait_for_frame, 0, SNAPSHOT_TIMEOUT_S
        )
        if frame is None:
            raise HTTPException(status_code=503, detail="No frame available yet")
        return Response(content=frame[1], media_type="image/jpeg")

    @app.get("/api/properties")
    async def api_properties() -> JSONResponse:
        loop = runner.loop
        if loop is None or loop.properties is None:
            raise HTTPException(status_code=503, detail="Streaming not started")
        return JSONResponse(loop.properties.to_dict())

    @app.get("/api/stats")
    async def api_stats() -> JSONResponse:
        return JSONResponse(runner.stats.to_dict())

    @app.get("/api/health")
    async def api_health() -> JSONResponse:
        loop = runner.loop
        state = loop.state if loop is not None else LoopState.UNINITIALIZED
        return JSONResponse(
            {
                "state": state.value,
                "streaming": state is LoopState.STREAMING,
                "ticks": loop.ticks if loop is not None else 0,
                "consecutive_failures": (
                    loop.consecutive_failures if loop is not None else 0
                ),
                "frame_size": (
                    list(loop.frame_size)
                    if loop is not None and loop.frame_size
                    else None
                ),
                "error": runner.error,
            }
        )

    return app


async def _generate_mjpeg(
    runner: PreviewRunner, fps: float, max_frames: int | None = None
) -> AsyncGenerator[bytes, None]:
    """Yield multipart MJPEG chunks from the runner's JpegSink.

    Ends when max_frames have been sent, or when the acquisition thread has
    stopped and no newer frame is coming.
    """
    interval = 1.0 / fps if fps > 0 else 0.0
    last = 0
    sent = 0
    while max_frames is None or sent < max_frames:
        frame = await asyncio.to_thread(runner.sink.wait_for_frame, last, 1.0)
        if frame is None:
            if not runner.alive:
                return
            continue
        last, jpeg = frame
        yield b"--frame\r\nContent-Type: image/jpeg\r\n\r\n" + jpeg + b"\r\n"
        sent += 1
        await asyncio.sleep(interval)


def serve(
    driver_config: DriverConfig,
    acquisition: AcquisitionConfig,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
) -> None:
    """Run the preview with uvicorn until interrupted."""
    app = create_app(make_loop_factory(driver_config, acquisition))
    uvicorn.run(app, host=host, port=port, log_level="warning")


def main() -> None:
    """Run the preview against the digital twin on the default address."""
    serve(DriverConfig(), AcquisitionConfig())


if __name__ == "__main__":  # pragma: no cover
    main()
