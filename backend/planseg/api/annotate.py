"""POST /api/annotate — segment and annotate one plan raster."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncGenerator
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from planseg.config import settings
from planseg.engine.config import ConfidenceThresholds
from planseg.engine.context import PipelineContext, RasterImage
from planseg.engine.pipeline import Pipeline, create_pipeline
from planseg.errors import ImageTooLarge, InvalidConfiguration, IOFailure
from planseg.models.requests import AnnotateRequest
from planseg.models.responses import AnnotateResponse, DegradationOut, ElementOut, LabelOut
from planseg.utils.imaging import decode_base64_image, encode_png_base64

router = APIRouter()


_SENTINEL = object()  # marks end of queue


def _prepare(req: AnnotateRequest) -> tuple[Pipeline, RasterImage]:
    """Decode the upload and build the pipeline; raises HTTPException on bad input."""
    overrides: dict[str, Any] = req.options.model_dump(exclude_none=True, exclude={"confidence_thresholds"})
    if req.options.confidence_thresholds is not None:
        t = req.options.confidence_thresholds
        overrides["confidence_thresholds"] = ConfidenceThresholds(high=t.high, medium=t.medium, low=t.low)

    try:
        config = settings.pipeline_config(**overrides)
    except InvalidConfiguration as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    try:
        image = decode_base64_image(req.image, max_pixels=settings.max_image_pixels)
    except ImageTooLarge as e:
        raise HTTPException(status_code=413, detail=str(e)) from e
    except IOFailure as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return create_pipeline(config), image


def _build_response(
    pipeline: Pipeline,
    ctx: PipelineContext,
    req: AnnotateRequest,
    elapsed_ms: float,
) -> AnnotateResponse:
    table = pipeline.table
    response = AnnotateResponse(
        metadata=pipeline.metadata(ctx),
        statistics=ctx.statistics.as_dict() if ctx.statistics else {},
        elements=[
            ElementOut(
                index=b.index,
                category=table[b.category].name,
                bbox=b.bbox,
                pixel_count=b.pixel_count,
                centroid=b.centroid,
                truncated=b.truncated,
                contour=list(b.contour),
            )
            for b in ctx.boundaries
        ],
        labels=[LabelOut(**asdict(label)) for label in ctx.labels],
        degradations=[
            DegradationOut(kind=d.kind, message=d.message, tile_index=d.tile_index) for d in ctx.degradations
        ],
        timings_ms=dict(ctx.timings_ms),
        processing_time_ms=round(elapsed_ms, 1),
    )

    try:
        if req.include_composite:
            response.composite = encode_png_base64(ctx.composite)
            response.diagnostic = encode_png_base64(ctx.diagnostic)
        if req.include_layers:
            response.layers = {name: encode_png_base64(layer.pixels) for name, layer in ctx.layers.items()}
    except IOFailure as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return response


async def _stream_annotate(req: AnnotateRequest) -> AsyncGenerator[str, None]:
    """Drive pipeline.run_streaming() in a thread, yielding SSE events as they arrive."""
    start = time.perf_counter()

    try:
        pipeline, image = _prepare(req)
    except HTTPException as e:
        data = json.dumps({"type": "error", "status": e.status_code, "message": e.detail})
        yield f"event: error\ndata: {data}\n\n"
        return

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    result: dict[str, Any] = {}

    def _run_pipeline() -> None:
        """Run the sync pipeline in a thread and push progress dicts onto the async queue."""
        try:
            stream = pipeline.run_streaming(image)
            while True:
                try:
                    progress = next(stream)
                except StopIteration as stop:
                    result["ctx"] = stop.value
                    break
                loop.call_soon_threadsafe(queue.put_nowait, progress)
        except Exception as e:
            result["error"] = str(e) or type(e).__name__
        finally:
            loop.call_soon_threadsafe(queue.put_nowait, _SENTINEL)

    loop.run_in_executor(None, _run_pipeline)

    while True:
        item = await queue.get()
        if item is _SENTINEL:
            break
        yield f"event: progress\ndata: {json.dumps(item)}\n\n"

    if "error" in result:
        data = json.dumps({"type": "error", "status": 500, "message": result["error"]})
        yield f"event: error\ndata: {data}\n\n"
        return

    elapsed = (time.perf_counter() - start) * 1000
    try:
        response = _build_response(pipeline, result["ctx"], req, elapsed)
    except HTTPException as e:
        data = json.dumps({"type": "error", "status": e.status_code, "message": e.detail})
        yield f"event: error\ndata: {data}\n\n"
        return
    yield f"event: result\ndata: {response.model_dump_json()}\n\n"
    yield f"event: done\ndata: {json.dumps({'type': 'done'})}\n\n"


@router.post("/annotate/stream")
async def annotate_stream(req: AnnotateRequest) -> StreamingResponse:
    return StreamingResponse(
        _stream_annotate(req),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/annotate", response_model=AnnotateResponse)
async def annotate(req: AnnotateRequest) -> AnnotateResponse:
    start = time.perf_counter()
    pipeline, image = _prepare(req)

    # CPU-bound; keep the event loop free while the pipeline runs.
    loop = asyncio.get_running_loop()
    ctx = await loop.run_in_executor(None, pipeline.run, image)

    elapsed = (time.perf_counter() - start) * 1000
    return _build_response(pipeline, ctx, req, elapsed)
