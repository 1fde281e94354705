# asset_converter/routers/jobs.py
from fastapi import APIRouter, Depends, HTTPException, Request

from asset_converter.core.errors import JobNotFound
from asset_converter.core.models import JobType
from asset_converter.core.registry import JobRegistry

router = APIRouter(tags=["jobs"])


def get_registry(request: Request) -> JobRegistry:
    return request.app.state.registry


@router.get("/process/{type}/{id}")
async def process(type: JobType, id: str, registry: JobRegistry = Depends(get_registry)):
    job = registry.register(id, type)
    return {"status": "OK", "message": "Queued", "id": job.id, "state": job.state.value}


@router.get("/progress/{id}")
async def progress(id: str, registry: JobRegistry = Depends(get_registry)):
    try:
        return registry.progress(id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Not Found")


@router.get("/queue")
async def queue(registry: JobRegistry = Depends(get_registry)):
    return [job.to_api() for job in registry.queue()]
