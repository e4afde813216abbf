from fastapi import FastAPI, File, UploadFile, HTTPException, Form, Query, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from contextlib import asynccontextmanager
from typing import Optional, AsyncGenerator
import pandas as pd
import asyncio
import os
import logging
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

from .ai_generator import DraftStatus, draft_certificate_template, validate_ai_configuration
from .campaign_dispatcher import send_campaign, preview_messages
from .config import get_settings
from .database.connection import get_database_manager, init_database
from .database.models import RunStatus
from .database.services import (
    GroupService, DatasetService, TemplateService, RunService,
    CertificateService, CampaignService, EmailLogService
)
from .dataset_processor import get_dataset_info
from .errors import (
    CertifyError, NotFoundError, ColumnNotFoundError, MalformedInputError, InvalidStateError
)
from .mail_transport import MailTransport, get_mail_transport
from .run_processor import execute_run, issue_certificate
from .schemas import (
    GroupCreate, GroupUpdate, DatasetCreate, LegacyDatasetImport, DatasetUpdate,
    TemplateCreate, TemplateUpdate, TemplateDraftRequest, RunCreate, RunUpdate,
    CertificateCreate, CertificateUpdate, CampaignCreate, CampaignUpdate
)
from .utils import certificates_to_dataframe, dataframe_to_csv, calculate_file_size_mb, sse_event

# Configuration settings
SSE_POLL_INTERVAL = float(os.getenv("SSE_POLL_INTERVAL", "1"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    success, message = init_database()
    if success:
        logger.info(message)
    else:
        logger.warning(f"Database not initialized: {message}")
    yield


app = FastAPI(
    title="Certify Batch",
    description="Generate personalized certificates from roster data and HTML templates, then dispatch them by email",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add CORS middleware to handle cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for development
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


ERROR_STATUS_CODES = (
    (NotFoundError, 404),
    (ColumnNotFoundError, 400),
    (MalformedInputError, 400),
    (InvalidStateError, 409),
)


@app.exception_handler(CertifyError)
async def certify_error_handler(request: Request, exc: CertifyError):
    status_code = 500
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code == 500:
        logger.error(f"Unhandled domain error on {request.url.path}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})


def get_transport() -> MailTransport:
    return get_mail_transport()


@app.get("/")
async def root():
    """Root endpoint with basic information"""
    return {
        "message": "Welcome to Certify Batch API",
        "version": "1.0.0",
        "features": [
            "Roster upload with legacy dataset migration",
            "HTML templates with {{field}} placeholders",
            "Batch certificate generation with progress tracking",
            "Personalized email campaigns per certificate",
            "AI-assisted template drafting"
        ],
        "endpoints": {
            "health": "/health",
            "docs": "/docs",
            "groups": "/groups",
            "datasets": "/datasets",
            "templates": "/templates",
            "runs": "/runs",
            "certificates": "/certificates",
            "campaigns": "/campaigns",
            "run_stream": "/stream/runs/{run_id}"
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint to verify service is running"""
    ai_valid, ai_error = validate_ai_configuration()
    db_ok, db_error = get_database_manager().test_connection()
    settings = get_settings()
    config_ok, config_error = settings.validate_config()

    return {
        "status": "healthy" if db_ok else "degraded",
        "message": "Certify Batch is running",
        "version": "1.0.0",
        "config": {
            "max_dataset_rows": settings.max_dataset_rows,
            "mail_transport": settings.mail_transport,
            "config_valid": config_ok,
            "config_error": config_error
        },
        "capabilities": {
            "database": "connected" if db_ok else f"unavailable: {db_error}",
            "template_drafting": "configured" if ai_valid else f"not configured: {ai_error}"
        }
    }


# Groups

@app.post("/groups", status_code=201)
async def create_group(payload: GroupCreate):
    return GroupService.create_group(payload.name, payload.description).to_dict()


@app.get("/groups")
async def list_groups():
    groups = GroupService.list_groups()
    return {"groups": [group.to_dict() for group in groups], "total": len(groups)}


@app.get("/groups/{group_id}")
async def get_group(group_id: int):
    return GroupService.get_group(group_id).to_dict()


@app.patch("/groups/{group_id}")
async def update_group(group_id: int, payload: GroupUpdate):
    return GroupService.update_group(group_id, payload.name, payload.description).to_dict()


@app.delete("/groups/{group_id}")
async def delete_group(group_id: int):
    return {"deleted_id": GroupService.delete_group(group_id)}


# Datasets

@app.post("/datasets", status_code=201)
async def create_dataset(payload: DatasetCreate):
    dataset = DatasetService.create_dataset(payload.owner_group_id, payload.name, payload.raw)
    return dataset.to_dict(include_rows=False)


@app.post("/datasets/upload", status_code=201)
async def upload_dataset(
    file: UploadFile = File(...),
    owner_group_id: int = Form(...),
    name: Optional[str] = Form(None, description="Dataset name. Defaults to the uploaded filename.")
):
    """
    Upload a CSV roster

    The first line is the header; every later non-blank line is a row.
    """
    if not file.filename.endswith('.csv'):
        raise HTTPException(status_code=400, detail="File must be a CSV")

    contents = await file.read()
    try:
        raw = contents.decode('utf-8-sig')
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="File encoding not supported. Please use UTF-8 encoded CSV")

    dataset = DatasetService.create_dataset(owner_group_id, name or file.filename, raw)
    logger.info(f"Uploaded {file.filename} ({calculate_file_size_mb(raw)} MB) as dataset {dataset.id}")
    return dataset.to_dict(include_rows=False)


@app.post("/datasets/legacy", status_code=201)
async def import_legacy_dataset(payload: LegacyDatasetImport):
    """Store a dataset in the legacy delimited-text encoding (migrate it afterwards)"""
    dataset = DatasetService.import_legacy_dataset(
        payload.owner_group_id, payload.name, payload.rows_text, payload.columns_text
    )
    return dataset.to_dict(include_rows=False)


@app.get("/datasets")
async def list_datasets(owner_group_id: int = Query(...)):
    datasets = DatasetService.list_datasets(owner_group_id)
    return {"datasets": [dataset.to_dict(include_rows=False) for dataset in datasets], "total": len(datasets)}


@app.get("/datasets/{dataset_id}")
async def get_dataset(dataset_id: int):
    return DatasetService.get_dataset(dataset_id).to_dict()


@app.get("/datasets/{dataset_id}/info")
async def get_dataset_summary(dataset_id: int, preview_rows: int = Query(5, ge=0, le=100)):
    return get_dataset_info(DatasetService.get_table(dataset_id), preview_rows)


@app.patch("/datasets/{dataset_id}")
async def update_dataset(dataset_id: int, payload: DatasetUpdate):
    return DatasetService.update_dataset(dataset_id, payload.name, payload.raw).to_dict(include_rows=False)


@app.delete("/datasets/{dataset_id}")
async def delete_dataset(dataset_id: int):
    return {"deleted_id": DatasetService.delete_dataset(dataset_id)}


@app.post("/datasets/{dataset_id}/migrate")
async def migrate_dataset(dataset_id: int):
    return DatasetService.migrate_legacy(dataset_id)


# Templates

@app.post("/templates", status_code=201)
async def create_template(payload: TemplateCreate):
    return TemplateService.create_template(payload.owner_group_id, payload.name, payload.document).to_dict()


@app.post("/templates/draft")
async def draft_template(payload: TemplateDraftRequest):
    """Draft an HTML template with the AI assistant (nothing is stored)"""
    result = await draft_certificate_template(payload.description, payload.fields)

    if result.status == DraftStatus.SUCCESS:
        return {
            "document": result.document,
            "detected_fields": result.detected_fields,
            "tokens_used": result.tokens_used,
            "model_used": result.model_used,
            "generation_time_seconds": round(result.generation_time_seconds, 2)
        }
    if result.status == DraftStatus.INVALID_INPUT:
        raise HTTPException(status_code=400, detail=result.error_message)
    if result.status == DraftStatus.FAILED:
        raise HTTPException(status_code=503, detail=result.error_message)
    raise HTTPException(status_code=502, detail=result.error_message)


@app.get("/templates")
async def list_templates(owner_group_id: int = Query(...)):
    templates = TemplateService.list_templates(owner_group_id)
    return {"templates": [template.to_dict() for template in templates], "total": len(templates)}


@app.get("/templates/{template_id}")
async def get_template(template_id: int):
    return TemplateService.get_template(template_id).to_dict()


@app.patch("/templates/{template_id}")
async def update_template(template_id: int, payload: TemplateUpdate):
    return TemplateService.update_template(template_id, payload.name, payload.document).to_dict()


@app.delete("/templates/{template_id}")
async def delete_template(template_id: int):
    return {"deleted_id": TemplateService.delete_template(template_id)}


# Runs

@app.post("/runs", status_code=201)
async def create_run(payload: RunCreate):
    run = RunService.create_run(
        dataset_id=payload.dataset_id,
        template_id=payload.template_id,
        name_column=payload.name_column,
        email_column=payload.email_column,
        name=payload.name,
        owner_group_id=payload.owner_group_id
    )
    return run.to_dict()


@app.get("/runs")
async def list_runs(owner_group_id: int = Query(...), status: Optional[str] = Query(None)):
    runs = RunService.list_runs(owner_group_id, status)
    return {"runs": [run.to_dict() for run in runs], "total": len(runs)}


@app.get("/runs/{run_id}")
async def get_run(run_id: int):
    return RunService.get_run(run_id).to_dict()


@app.patch("/runs/{run_id}")
async def update_run(run_id: int, payload: RunUpdate):
    return RunService.rename_run(run_id, payload.name).to_dict()


@app.delete("/runs/{run_id}")
async def delete_run(run_id: int):
    return RunService.delete_run(run_id)


@app.post("/runs/{run_id}/execute")
async def execute_run_endpoint(run_id: int):
    """
    Execute a pending run

    Blocks until every row has been processed. Progress can be followed
    meanwhile through /runs/{run_id}/progress or /stream/runs/{run_id}.
    """
    summary = await run_in_threadpool(execute_run, run_id)
    return summary.to_dict()


@app.get("/runs/{run_id}/progress")
async def get_run_progress(run_id: int):
    return RunService.get_run_progress(run_id)


@app.get("/runs/{run_id}/download")
async def download_run_certificates(run_id: int):
    """Download the certificates of a run as CSV"""
    run = RunService.get_run(run_id)
    certificates = CertificateService.list_certificates(run_id=run_id)
    csv_content = dataframe_to_csv(certificates_to_dataframe(certificates))

    def iter_csv():
        yield csv_content

    return StreamingResponse(
        iter_csv(),
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f"attachment; filename=certificates_run_{run.id}.csv",
            "X-Run-ID": str(run.id),
            "Cache-Control": "no-cache, no-store, must-revalidate"
        }
    )


@app.get("/stream/runs/{run_id}")
async def stream_run_progress(run_id: int):
    """
    Stream run progress using Server-Sent Events (SSE)

    Events: connection_established, progress_update (whenever the count of
    generated certificates changes), processing_complete, error.

    Frontend Usage:
    ```javascript
    const eventSource = new EventSource(`/stream/runs/${runId}`);
    eventSource.addEventListener('progress_update', (event) => {
        const progress = JSON.parse(event.data);
        updateProgressBar(progress.data.percentage);
    });
    ```
    """
    # Resolve the run before opening the stream so a bad id is a plain 404
    RunService.get_run(run_id)

    async def event_stream() -> AsyncGenerator[str, None]:
        yield sse_event("connection_established", {
            'type': 'connection_established',
            'run_id': run_id,
            'timestamp': pd.Timestamp.now().isoformat(),
            'message': 'SSE connection established successfully'
        })

        last_generated = -1
        while True:
            try:
                progress = RunService.get_run_progress(run_id)
            except NotFoundError:
                yield sse_event("error", {'type': 'error', 'run_id': run_id, 'message': 'Run not found'})
                return

            if progress["certificates_generated"] != last_generated:
                last_generated = progress["certificates_generated"]
                yield sse_event("progress_update", {
                    'type': 'progress_update',
                    'run_id': run_id,
                    'timestamp': pd.Timestamp.now().isoformat(),
                    'data': progress
                })

            if progress["status"] in (RunStatus.COMPLETED, RunStatus.ERROR):
                yield sse_event("processing_complete", {
                    'type': 'processing_complete',
                    'run_id': run_id,
                    'timestamp': pd.Timestamp.now().isoformat(),
                    'data': {
                        'final_status': progress["status"],
                        'total_rows': progress["total_rows"],
                        'certificates_generated': progress["certificates_generated"],
                        'completion_message': (
                            f"Run finished: {progress['certificates_generated']}/{progress['total_rows']} "
                            f"certificates generated"
                        )
                    }
                })
                return

            await asyncio.sleep(SSE_POLL_INTERVAL)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"
        }
    )


# Certificates

@app.post("/certificates", status_code=201)
async def create_certificate(payload: CertificateCreate):
    """Issue a single certificate for one dataset row outside of a run"""
    certificate = issue_certificate(
        dataset_id=payload.dataset_id,
        template_id=payload.template_id,
        row_index=payload.row_index,
        name_column=payload.name_column,
        email_column=payload.email_column,
        run_id=payload.run_id
    )
    return certificate.to_dict()


@app.get("/certificates")
async def list_certificates(
    owner_group_id: Optional[int] = Query(None),
    run_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None)
):
    certificates = CertificateService.list_certificates(owner_group_id, run_id, status)
    return {"certificates": [certificate.to_dict() for certificate in certificates], "total": len(certificates)}


@app.get("/certificates/{certificate_id}")
async def get_certificate(certificate_id: str):
    return CertificateService.get_certificate(certificate_id).to_dict()


@app.patch("/certificates/{certificate_id}")
async def update_certificate(certificate_id: str, payload: CertificateUpdate):
    changes = payload.model_dump(exclude_unset=True)
    return CertificateService.update_certificate(certificate_id, **changes).to_dict()


@app.delete("/certificates/{certificate_id}")
async def delete_certificate(certificate_id: str):
    return {"deleted_id": CertificateService.delete_certificate(certificate_id)}


# Campaigns

@app.post("/campaigns", status_code=201)
async def create_campaign(payload: CampaignCreate):
    campaign = CampaignService.create_campaign(
        payload.run_id, payload.name, payload.subject, payload.body, payload.html_body
    )
    return campaign.to_dict()


@app.get("/campaigns")
async def list_campaigns(owner_group_id: Optional[int] = Query(None), run_id: Optional[int] = Query(None)):
    campaigns = CampaignService.list_campaigns(owner_group_id, run_id)
    return {"campaigns": [campaign.to_dict() for campaign in campaigns], "total": len(campaigns)}


@app.get("/campaigns/{campaign_id}")
async def get_campaign(campaign_id: int):
    return CampaignService.get_campaign(campaign_id).to_dict()


@app.patch("/campaigns/{campaign_id}")
async def update_campaign(campaign_id: int, payload: CampaignUpdate):
    changes = payload.model_dump(exclude_unset=True)
    return CampaignService.update_campaign(campaign_id, **changes).to_dict()


@app.delete("/campaigns/{campaign_id}")
async def delete_campaign(campaign_id: int):
    return {"deleted_id": CampaignService.delete_campaign(campaign_id)}


@app.get("/campaigns/{campaign_id}/preview")
async def preview_campaign(campaign_id: int, limit: int = Query(3, ge=1, le=20)):
    return {"campaign_id": campaign_id, "messages": preview_messages(campaign_id, limit)}


@app.post("/campaigns/{campaign_id}/send")
async def send_campaign_endpoint(campaign_id: int, transport: MailTransport = Depends(get_transport)):
    """
    Send a campaign

    Per-recipient failures do not fail the request; inspect emails_failed
    and skipped_no_recipient in the response.
    """
    summary = await run_in_threadpool(send_campaign, campaign_id, transport)
    return summary.to_dict()


@app.get("/campaigns/{campaign_id}/logs")
async def get_campaign_logs(campaign_id: int):
    CampaignService.get_campaign(campaign_id)
    logs = EmailLogService.list_logs(campaign_id)
    return {"logs": [log.to_dict() for log in logs], "total": len(logs)}


# Production runner
if __name__ == "__main__":
    import uvicorn

    # Configuration from environment variables
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    workers = int(os.getenv("WORKERS", "1"))
    reload = os.getenv("RELOAD", "false").lower() == "true"

    print(f"Starting Certify Batch on {host}:{port}")
    print(f"Workers: {workers}, Reload: {reload}")

    uvicorn.run(
        "certify.main:app",
        host=host,
        port=port,
        workers=workers if not reload else 1,  # Can't use multiple workers with reload
        reload=reload,
        access_log=True,
        log_level="info"
    )
