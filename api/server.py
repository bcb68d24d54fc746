"""FastAPI surface for health checks, scheduler control and manual runs."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException, Request

from api.models import ManualRunResponse
from core.errors import DispatcherClosed, InitializationError, ItemNotFound
from scheduler.context import SchedulerContext, build_context
from scheduler.models import SchedulerStatus


def _ctx(request: Request) -> SchedulerContext:
    return request.app.state.context


def create_app(context: SchedulerContext | None = None) -> FastAPI:
    """Build the app around an explicit context (built from the environment if omitted).

    ASGITransport doesn't run the lifespan, so tests pass an initialised
    context and drive the scheduler themselves.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.context is None:
            app.state.context = build_context()
        ctx: SchedulerContext = app.state.context
        await ctx.init()
        await ctx.scheduler.start()
        yield
        await ctx.close()

    app = FastAPI(
        title="Scheduling Coordinator API",
        description="Lease-coordinated dispatch of recurring work items.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.context = context

    # ── Routes ────────────────────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/scheduler/status", response_model=SchedulerStatus)
    async def scheduler_status(request: Request):
        """Loop state, error counter and lease ownership for health reporting."""
        return await _ctx(request).scheduler.status()

    @app.post("/scheduler/start", response_model=SchedulerStatus)
    async def scheduler_start(request: Request):
        """Start the loop; also the way out of the disabled state."""
        scheduler = _ctx(request).scheduler
        try:
            await scheduler.start()
        except InitializationError as e:
            raise HTTPException(503, detail=str(e))
        return await scheduler.status()

    @app.post("/scheduler/stop", response_model=SchedulerStatus)
    async def scheduler_stop(request: Request):
        scheduler = _ctx(request).scheduler
        await scheduler.stop()
        return await scheduler.status()

    @app.post("/items/{item_id}/run", response_model=ManualRunResponse, status_code=202)
    async def run_item(item_id: str, request: Request, x_owner_id: str = Header(...)):
        """Queue one run of an item right now, outside its schedule."""
        try:
            job_id = await _ctx(request).scheduler.trigger_manual_run(item_id, x_owner_id)
        except ItemNotFound:
            raise HTTPException(404, detail=f"Item '{item_id}' not found")
        except DispatcherClosed as e:
            raise HTTPException(503, detail=str(e))
        return ManualRunResponse(
            message="Run queued. Results will be delivered when the job completes.",
            item_id=item_id,
            job_id=job_id,
        )

    return app


app = create_app()
