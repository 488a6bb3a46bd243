"""
ESS Bridge API

FastAPI surface of the bridge: the signed portal endpoint, the ledger
webhook and a small set of operator endpoints for inspecting and nudging
applications.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
import uvicorn

from . import __version__
from .applications import ApplicationRepository
from .audit import AuditTrail, AuditEventType
from .callbacks import CallbackDispatcher, CallbackTransport
from .config import BridgeConfig, get_config
from .exceptions import BridgeError, ResponseCode
from .gateway import ProtocolGateway, TASK_LEDGER_EVENT, TASK_RESUME, register_tasks
from .ledger import FineractLedgerClient, LedgerClient, LedgerEvent
from .logging_config import setup_logging
from .messages import MessageFactory
from .products import ProductCatalog
from .saga import LoanApplicationSaga
from .signature import RSASignatureProvider, SignatureProvider
from .storage import StorageInterface, create_storage
from .tasks import WorkQueue


HTTP_STATUS_BY_CODE = {
    ResponseCode.MALFORMED_MESSAGE: status.HTTP_400_BAD_REQUEST,
    ResponseCode.MISSING_FIELD: status.HTTP_400_BAD_REQUEST,
    ResponseCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ResponseCode.INVALID_CALCULATION: status.HTTP_400_BAD_REQUEST,
    ResponseCode.ILLEGAL_STATE: status.HTTP_409_CONFLICT,
    ResponseCode.TRY_LATER: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# Bridge System Context
class BridgeSystem:
    """All bridge components wired together"""

    def __init__(
        self,
        settings: Optional[BridgeConfig] = None,
        storage: Optional[StorageInterface] = None,
        ledger: Optional[LedgerClient] = None,
        signature: Optional[SignatureProvider] = None,
        callback_transport: Optional[CallbackTransport] = None
    ):
        self.settings = settings or get_config()
        settings = self.settings

        self.storage = storage or create_storage(settings.database_path)
        self.audit_trail = AuditTrail(self.storage)

        self.products = ProductCatalog(self.storage, self.audit_trail)
        if self.products.get(settings.default_product_code) is None:
            self.products.register_default(settings)

        self.signature = signature or RSASignatureProvider.from_files(
            settings.private_key_path, settings.portal_certificate_path
        )
        self.ledger = ledger or FineractLedgerClient(
            base_url=settings.ledger_base_url,
            tenant=settings.ledger_tenant,
            username=settings.ledger_username,
            password=settings.ledger_password,
            timeout=settings.ledger_timeout,
            office_id=settings.ledger_office_id,
        )
        self.factory = MessageFactory(settings.fsp_code, settings.fsp_name, settings.portal_name)
        self.callbacks = CallbackDispatcher(
            self.storage, self.signature, self.factory, settings.callback_url,
            transport=callback_transport,
            timeout=settings.callback_timeout,
            max_attempts=settings.callback_max_attempts,
            audit_trail=self.audit_trail,
        )
        self.repository = ApplicationRepository(self.storage)
        self.saga = LoanApplicationSaga(
            self.repository, self.products, self.ledger, self.callbacks, self.audit_trail,
            ledger_timeout=settings.ledger_timeout,
            ledger_product_id=settings.ledger_product_id,
        )
        self.queue = WorkQueue(self.storage, poll_interval=settings.worker_poll_interval)
        register_tasks(self.queue, self.saga)
        self.gateway = ProtocolGateway(
            self.saga, self.queue, self.products, self.ledger,
            signer=self.signature,
            verifier=self.signature,
            factory=self.factory,
            ledger_timeout=settings.ledger_timeout,
            payoff_interest_days=settings.payoff_interest_days,
        )

    def close(self) -> None:
        """Release the ledger client and the storage connection"""
        self.ledger.close()
        self.storage.close()


def get_bridge_system(request: Request) -> BridgeSystem:
    return request.app.state.system


router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "ess_bridge",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


# Portal endpoint
@router.post("/api/ess/messages")
async def receive_message(request: Request, system: BridgeSystem = Depends(get_bridge_system)):
    """Signed portal envelope in, signed reply out"""
    body = await request.body()
    reply = await run_in_threadpool(system.gateway.handle_inbound, body)
    return Response(content=reply, media_type="application/xml")


# Ledger webhook
@router.post("/api/ledger/webhook", status_code=status.HTTP_202_ACCEPTED)
async def ledger_webhook(body: Dict[str, Any], system: BridgeSystem = Depends(get_bridge_system)):
    """Queue a ledger business event (approval, disbursement, reschedule)"""
    try:
        event = LedgerEvent.from_webhook(body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    item = system.queue.enqueue(TASK_LEDGER_EVENT, event.loan_id, body)
    return {"status": "queued", "work_item_id": item.id, "action": event.action, "loan_id": event.loan_id}


@router.get("/api/applications/{application_id}")
async def get_application(application_id: str, system: BridgeSystem = Depends(get_bridge_system)):
    """Application with its callback history"""
    application = system.repository.require(application_id)
    return {
        "application": application.to_dict(),
        "callbacks": [
            {
                "id": message.id,
                "message_type": message.message_type.value,
                "msg_id": message.msg_id,
                "status": message.status.value,
                "attempts": message.attempts,
                "last_error": message.last_error,
            }
            for message in system.callbacks.history(application_id)
        ],
        "audit_events": len(system.audit_trail.get_events_for_entity("loan_application", application_id)),
    }


# Operator endpoints
@router.post("/api/admin/applications/{application_id}/resume", status_code=status.HTTP_202_ACCEPTED)
async def resume_application(application_id: str, system: BridgeSystem = Depends(get_bridge_system)):
    """Queue the remaining ledger stages of a stalled application"""
    system.repository.require(application_id)
    item = system.queue.enqueue(TASK_RESUME, application_id, {"application_id": application_id})
    return {"status": "queued", "work_item_id": item.id}


@router.post("/api/admin/work-items/{item_id}/requeue")
async def requeue_work_item(item_id: str, system: BridgeSystem = Depends(get_bridge_system)):
    try:
        item = system.queue.requeue(item_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Work item not found")
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"id": item.id, "task_type": item.task_type, "status": item.status.value}


@router.post("/api/admin/callbacks/{message_id}/redeliver")
async def redeliver_callback(message_id: str, system: BridgeSystem = Depends(get_bridge_system)):
    """Resend a stored callback byte-for-byte"""
    message = await run_in_threadpool(system.callbacks.redeliver, message_id)
    return {
        "id": message.id,
        "status": message.status.value,
        "attempts": message.attempts,
        "response_code": message.response_code,
        "last_error": message.last_error,
    }


@router.post("/api/admin/reconcile")
async def reconcile(system: BridgeSystem = Depends(get_bridge_system)):
    """Complete disbursed applications whose ledger loans are settled"""
    return await run_in_threadpool(system.saga.reconcile)


@router.get("/api/audit/verify")
async def verify_audit_trail(system: BridgeSystem = Depends(get_bridge_system)):
    result = system.audit_trail.verify_integrity()
    system.audit_trail.log_event(
        event_type=AuditEventType.AUDIT_INTEGRITY_CHECK,
        entity_type="system",
        entity_id="audit_trail",
        metadata={"valid": result["valid"], "total_events": result["total_events"]}
    )
    return result


def create_app(system: Optional[BridgeSystem] = None, start_worker: Optional[bool] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    if system is None:
        settings = get_config()
        setup_logging(settings.log_level, log_format=settings.log_format)
        system = BridgeSystem(settings)
    if start_worker is None:
        start_worker = system.settings.worker_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_worker:
            system.queue.start()
        yield
        if start_worker:
            system.queue.stop()
        system.close()

    app = FastAPI(
        title="ESS Bridge API",
        description="Employee self-service portal to core banking ledger loan integration",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError):
        return JSONResponse(
            status_code=HTTP_STATUS_BY_CODE.get(exc.response_code, status.HTTP_400_BAD_REQUEST),
            content={"detail": exc.message, "response_code": exc.response_code}
        )

    app.include_router(router)
    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    settings = get_config()
    uvicorn.run(
        "ess_bridge.api:create_app",
        factory=True,
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=debug,
        log_level=settings.log_level.lower()
    )
