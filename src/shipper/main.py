"""Main FastAPI application for the deployment gateway."""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from statestore import StoreError, build_record_store

from .auth import verify_secret_key
from .config import Config
from .engine import DeploymentEngine
from .errors import GatewayError
from .middleware import RequestIDMiddleware, install_request_id_filter
from .nomad_client import NomadClient

logger = logging.getLogger(__name__)

MAX_JOB_FILE_BYTES = 1024 * 1024
LOG_FORMAT = "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"


class DeployRequest(BaseModel):
    service_name: str
    tag: str


class DeploymentResponse(BaseModel):
    status: str
    tag: str
    handle: Optional[str] = None
    message: Optional[str] = None


def build_engine(config: Config) -> DeploymentEngine:
    """Wire the record store and Nomad client described by ``config``."""
    store = build_record_store(
        config.STORE_BACKEND,
        project=config.GOOGLE_CLOUD_PROJECT,
        collection=config.FIRESTORE_COLLECTION,
    )
    client = NomadClient(
        config.NOMAD_URL,
        token=config.NOMAD_TOKEN,
        skip_tls_verify=config.SKIP_TLS_VERIFY,
    )
    return DeploymentEngine(
        store,
        client,
        updated_by=config.GATEWAY_IDENTITY,
        enforce_index=config.NOMAD_ENFORCE_INDEX,
    )


def create_app(config: Optional[Config] = None, engine: Optional[DeploymentEngine] = None) -> FastAPI:
    """Build the FastAPI app. Tests pass their own config and engine."""
    config = config or Config()

    # Configure logging
    logging.basicConfig(level=config.LOG_LEVEL, format=LOG_FORMAT)
    install_request_id_filter()

    # Validate configuration
    config.validate()

    app = FastAPI(title="Shipper Deployment Gateway")
    app.state.config = config
    app.state.engine = engine or build_engine(config)
    app.add_middleware(RequestIDMiddleware)

    async def require_secret_key(
        request: Request,
        x_secret_key: Optional[str] = Header(None, alias="X-Secret-Key"),
    ):
        if not verify_secret_key(x_secret_key, config.RPC_SECRET):
            logger.warning(
                "Invalid secret key provided",
                extra={"path": request.url.path, "method": request.method},
            )
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid secret key")

    def get_engine() -> DeploymentEngine:
        return app.state.engine

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        content = {"status": "error", "code": exc.code, "message": exc.message}
        if exc.tag:
            content["tag"] = exc.tag
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error(f"Store error: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "error", "code": "store_error", "message": str(exc)},
        )

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/health")
    async def health():
        """Detailed health check."""
        return {
            "status": "healthy",
            "time": datetime.now(timezone.utc).isoformat(),
            "nomad_url_configured": bool(config.NOMAD_URL),
            "nomad_token_configured": config.NOMAD_TOKEN is not None,
            "rpc_secret_configured": config.RPC_SECRET is not None,
            "store_backend": config.STORE_BACKEND,
        }

    @app.post(
        "/deploy",
        response_model=DeploymentResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_secret_key)],
    )
    async def deploy(body: DeployRequest, engine: DeploymentEngine = Depends(get_engine)):
        """Redeploy a registered Nomad job under a new tag."""
        result = await engine.submit_by_name(body.tag, body.service_name)
        return result.to_dict()

    @app.post(
        "/deploy/job",
        response_model=DeploymentResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_secret_key)],
    )
    async def deploy_job(
        tag: Optional[str] = Form(None),
        job_file: Optional[UploadFile] = File(None),
        engine: DeploymentEngine = Depends(get_engine),
    ):
        """Submit an uploaded HCL job file under a new tag."""
        if job_file is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Job file is required")

        content = await job_file.read(MAX_JOB_FILE_BYTES + 1)
        if len(content) > MAX_JOB_FILE_BYTES:
            logger.error("Job file exceeds 1MB limit", extra={"tag": tag, "upload_name": job_file.filename})
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail="Job file exceeds 1MB limit",
            )

        try:
            raw_document = content.decode("utf-8")
        except UnicodeDecodeError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Job file must be UTF-8 text")

        logger.info(
            f"Job file received: {job_file.filename}",
            extra={"tag": tag, "upload_name": job_file.filename, "size": len(content)},
        )
        result = await engine.submit_by_document(tag, raw_document)
        return result.to_dict()

    @app.get(
        "/status/{tag}",
        response_model=DeploymentResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_secret_key)],
    )
    async def deployment_status(tag: str, engine: DeploymentEngine = Depends(get_engine)):
        """Return the tracked status for a tag."""
        result = await engine.query_status(tag)
        return result.to_dict()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _config = app.state.config
    uvicorn.run(
        "shipper.main:app",
        host="0.0.0.0",
        port=_config.PORT,
        log_level="info",
        reload=_config.DEBUG
    )
