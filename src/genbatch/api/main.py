import logging
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from genbatch import workflows
from genbatch.config import resolve_config
from genbatch.errors import ConfigurationError
from genbatch.store import DocumentStore

logger = logging.getLogger(__name__)

app = FastAPI(title="genbatch")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # For dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One store per data file so every request shares its write lock
_stores: Dict[str, DocumentStore] = {}


def get_store() -> DocumentStore:
    path = resolve_config().storage.data_file
    if path not in _stores:
        _stores[path] = DocumentStore(path)
    return _stores[path]


def _config_error(e: ConfigurationError) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": e.code, "message": e.message})


# --- Pydantic Models for Requests ---
class GenerateVideosRequest(BaseModel):
    numbers: Optional[List[str]] = Field(default=None, description="Only these task numbers")
    workflow: Optional[str] = Field(default=None, description="Workflow preset (A or B)")
    provider: Optional[str] = Field(default=None, description="Video provider key")


class GenerateImagesRequest(BaseModel):
    mode: str = Field(default="new", description="new, selected or all")
    numbers: Optional[List[str]] = Field(default=None, description="Prompt numbers for mode=selected")


class ImportCsvRequest(BaseModel):
    csv: str = Field(..., description="CSV text with a header row")
    workflow: str = Field(default="A", description="Workflow preset for the imported rows")
    provider: Optional[str] = Field(default=None, description="Video provider key")


# --- API ENDPOINTS ---


@app.get("/")
async def root():
    return {"message": "genbatch API", "docs": "/docs", "health": "/health"}


@app.get("/health")
async def health_check():
    return {"status": "ok"}


@app.get("/config/defaults")
async def get_config_defaults():
    return resolve_config().model_dump()


@app.get("/video-tasks")
async def list_video_tasks():
    """Status counts plus every video task record in camelCase."""
    data = await get_store().read()
    return {
        "summary": workflows.summarize_video_tasks(data),
        "tasks": [record.model_dump(by_alias=True) for record in data.video_tasks],
    }


@app.get("/video-tasks/export", response_class=PlainTextResponse)
async def export_video_tasks(workflow: Optional[str] = None):
    data = await get_store().read()
    return workflows.export_video_tasks_csv(data, workflow=workflow)


@app.post("/video-tasks/import")
async def import_video_tasks(payload: ImportCsvRequest):
    try:
        numbers = await workflows.import_video_tasks_csv(
            get_store(), payload.csv, workflow=payload.workflow, provider=payload.provider
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"imported": numbers}


@app.post("/generate/videos")
async def generate_videos(payload: GenerateVideosRequest):
    """Run a video batch to completion and return the summary."""
    try:
        result = await workflows.generate_videos(
            get_store(),
            resolve_config(),
            numbers=payload.numbers,
            workflow=payload.workflow,
            provider=payload.provider,
        )
    except ConfigurationError as e:
        raise _config_error(e)
    return result.model_dump()


@app.post("/generate/images")
async def generate_images(payload: GenerateImagesRequest):
    """Generate images for the selected prompts and return per-job results."""
    try:
        result = await workflows.generate_images(
            get_store(), resolve_config(), mode=payload.mode, numbers=payload.numbers
        )
    except ConfigurationError as e:
        raise _config_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return result.model_dump()
