"""Backend functions exposed as JSON-over-POST endpoints under /functions/v1."""

import base64
import binascii
import uuid
from pathlib import Path
from typing import List, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import Session

import auth
import bank_sync
import chat_history
import documents
import push as push_service
import transactions
from assistant import AssistantRunner, ToolExecutor, generate_completion
from config import Settings, configure_logging, load_settings
from database import Document, PlaidConnection, init_db, make_engine, make_session_factory
from errors import (
    DataIntegrityError,
    DocumentProcessingError,
    ExternalServiceError,
    FinanceChatError,
    InvalidRequestError,
)
from services import Services, build_services
from storage import CHAT_FILES

logger = structlog.get_logger(__name__)

STATIC_DIR = Path(__file__).parent / "static"
CORS_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]

router = APIRouter(prefix="/functions/v1")


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _require(client, name: str):
    if client is None:
        raise ExternalServiceError(f"{name} is not configured")
    return client


def _decode(content_base64: str) -> bytes:
    try:
        return base64.b64decode(content_base64, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidRequestError("content_base64 is not valid base64")


# --- Request models ---

class FunctionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CredentialsRequest(FunctionRequest):
    username: str
    password: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class UserRequest(FunctionRequest):
    user_id: Optional[str] = None


class FileRef(FunctionRequest):
    url: str
    type: Optional[str] = None
    name: Optional[str] = None


class SaveMessageRequest(UserRequest):
    content: str
    sender: str
    thread_id: Optional[str] = None
    file: Optional[FileRef] = None


class UploadFileRequest(UserRequest):
    file_name: str
    content_type: str = "application/octet-stream"
    content_base64: str


class GenerateRequest(FunctionRequest):
    prompt: str
    user_id: Optional[str] = Field(None, alias="userId")
    file_url: Optional[str] = Field(None, alias="fileUrl")


class AssistantRequest(GenerateRequest):
    thread_id: Optional[str] = Field(None, alias="threadId")
    file_type: Optional[str] = Field(None, alias="fileType")
    document_id: Optional[str] = Field(None, alias="documentId")


class CancelRunRequest(FunctionRequest):
    thread_id: str
    run_id: str


class TransactionRequest(FunctionRequest):
    amount: float
    category: str
    date: Optional[str] = None
    description: Optional[str] = None
    user_id: Optional[str] = Field(None, alias="userId")


class FetchTransactionsRequest(UserRequest):
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    category: Optional[str] = None


class DeleteTransactionRequest(UserRequest):
    transaction_id: int


class AttachImageRequest(UploadFileRequest):
    transaction_id: Optional[int] = None


class ProcessImageRequest(FunctionRequest):
    image_url: str = Field(alias="imageUrl")


class CreateDocumentRequest(UserRequest):
    file_url: str
    original_name: str = "document.pdf"


class ProcessPdfRequest(FunctionRequest):
    document_id: str = Field(alias="documentId")
    file_url: Optional[str] = Field(None, alias="fileUrl")


class DocumentStatusRequest(FunctionRequest):
    document_id: str


class ExchangeTokenRequest(UserRequest):
    public_token: str
    metadata: Optional[dict] = None


class ItemRequest(UserRequest):
    item_id: str


class RegisterTokenRequest(UserRequest):
    token: str


class PushRequest(FunctionRequest):
    tokens: List[str]
    title: str
    body: str
    data: Optional[dict] = None


class DatabaseWebhookRequest(FunctionRequest):
    type: str
    table: str
    record: dict


# --- Profiles & chat history ---

@router.post("/sign-up")
def sign_up(req: CredentialsRequest, db: Session = Depends(get_db)):
    profile = auth.sign_up(db, req.username, req.password, first_name=req.first_name, last_name=req.last_name)
    return {"user_id": profile.id, "username": profile.username}


@router.post("/sign-in")
def sign_in(req: CredentialsRequest, db: Session = Depends(get_db)):
    profile = auth.sign_in(db, req.username, req.password)
    return {"user_id": profile.id, "username": profile.username}


@router.post("/chat-history")
def get_chat_history(req: UserRequest, db: Session = Depends(get_db)):
    auth.require_profile(db, req.user_id)
    return {"messages": [chat_history.message_to_dict(m) for m in chat_history.list_messages(db, req.user_id)]}


@router.post("/save-message")
def save_message(req: SaveMessageRequest, db: Session = Depends(get_db)):
    auth.require_profile(db, req.user_id)
    message = chat_history.save_message(
        db, req.user_id, req.content, req.sender, req.thread_id, req.file.model_dump() if req.file else None
    )
    return chat_history.message_to_dict(message)


@router.post("/upload-file")
def upload_file(req: UploadFileRequest, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    auth.require_profile(db, req.user_id)
    data = _decode(req.content_base64)
    ext = req.file_name.rsplit(".", 1)[-1] if "." in req.file_name else "bin"
    url = services.storage.save_file(CHAT_FILES, f"{uuid.uuid4()}.{ext}", data, req.content_type)
    return {"url": url, "type": req.content_type, "name": req.file_name}


# --- LLM ---

@router.post("/generate-response")
def generate_response(
    req: GenerateRequest,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    settings: Settings = Depends(get_settings),
):
    auth.require_profile(db, req.user_id)
    logger.info("generate_response", has_file_url=bool(req.file_url))
    client = _require(services.openai, "OpenAI")
    text = generate_completion(client, settings.openai_model, req.prompt, req.file_url)
    return {"generatedText": text, "threadId": None}


@router.post("/assistant-response")
def assistant_response(
    req: AssistantRequest,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
    settings: Settings = Depends(get_settings),
):
    auth.require_profile(db, req.user_id)
    runner = AssistantRunner(
        _require(services.openai, "OpenAI"),
        _require(settings.assistant_id, "OPENAI_ASSISTANT_ID"),
        ocr=services.ocr,
        poll_interval=settings.run_poll_interval,
        max_attempts=settings.run_poll_attempts,
    )
    reply = runner.respond(
        req.prompt,
        ToolExecutor(db, req.user_id),
        thread_id=req.thread_id,
        file_url=req.file_url,
        file_type=req.file_type,
        document_id=req.document_id,
    )
    return {"generatedText": reply.text, "threadId": reply.thread_id, "runId": reply.run_id}


@router.post("/cancel-run")
def cancel_run(req: CancelRunRequest, services: Services = Depends(get_services), settings: Settings = Depends(get_settings)):
    runner = AssistantRunner(_require(services.openai, "OpenAI"), settings.assistant_id or "")
    runner.cancel_run(req.thread_id, req.run_id)
    return {"success": True}


# --- Transactions ---

@router.post("/add-expense")
def add_expense(req: TransactionRequest, db: Session = Depends(get_db)):
    auth.require_profile(db, req.user_id)
    txn = transactions.add_expense(db, req.user_id, req.amount, req.category, req.date, req.description)
    return {"success": True, "data": transactions.transaction_to_dict(txn)}


@router.post("/add-income")
def add_income(req: TransactionRequest, db: Session = Depends(get_db)):
    auth.require_profile(db, req.user_id)
    txn = transactions.add_income(db, req.user_id, req.amount, req.category, req.date, req.description)
    return {"success": True, "data": transactions.transaction_to_dict(txn)}


@router.post("/fetch-user-transactions")
def fetch_user_transactions(req: FetchTransactionsRequest, db: Session = Depends(get_db)):
    auth.require_profile(db, req.user_id)
    txns = transactions.fetch_user_transactions(db, req.user_id, req.start_date, req.end_date, req.category)
    return {"transactions": [transactions.transaction_to_dict(t) for t in txns]}


@router.post("/delete-transaction")
def delete_transaction(req: DeleteTransactionRequest, db: Session = Depends(get_db)):
    auth.require_profile(db, req.user_id)
    transactions.delete_transaction(db, req.user_id, req.transaction_id)
    return {"success": True}


@router.post("/attach-transaction-image")
def attach_transaction_image(req: AttachImageRequest, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    auth.require_profile(db, req.user_id)
    page = transactions.attach_receipt(
        db, services.storage, req.user_id, req.file_name, _decode(req.content_base64), req.content_type, req.transaction_id
    )
    return {"success": True, "document_page_id": page.id, "image_url": page.image_url}


# --- OCR & documents ---

@router.post("/process-image")
def process_image(req: ProcessImageRequest, services: Services = Depends(get_services)):
    text = _require(services.ocr, "OCR").extract_text(req.image_url)
    return {"text": text, "success": True}


@router.post("/create-document")
def create_document(req: CreateDocumentRequest, db: Session = Depends(get_db)):
    auth.require_profile(db, req.user_id)
    doc = documents.create_document(db, req.user_id, req.file_url, req.original_name)
    return {"document_id": doc.id, "status": doc.status}


def process_document_task(session_factory, storage, document_id: str):
    db = session_factory()
    try:
        documents.process_document(db, storage, document_id)
    except DocumentProcessingError as e:
        # The document row already says "error"; clients find out by polling
        logger.info("document_error_recorded", document_id=document_id, error=str(e))
    finally:
        db.close()


@router.post("/process-pdf")
def process_pdf(
    req: ProcessPdfRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    status = documents.document_status(db, req.document_id)
    if status["status"] in (documents.PROCESSING, documents.COMPLETED):
        return {"success": True, "documentId": req.document_id, "status": status["status"]}
    if req.file_url:
        doc = db.get(Document, req.document_id)
        doc.file_url = req.file_url
        db.commit()
    logger.info("process_pdf_queued", document_id=req.document_id)
    background_tasks.add_task(process_document_task, request.app.state.session_factory, services.storage, req.document_id)
    return {"success": True, "documentId": req.document_id, "status": status["status"]}


@router.post("/document-status")
def document_status(req: DocumentStatusRequest, db: Session = Depends(get_db)):
    return documents.document_status(db, req.document_id)


# --- Bank linking ---

@router.post("/create-link-token")
def create_link_token(req: UserRequest, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    auth.require_profile(db, req.user_id)
    link_token = _require(services.plaid, "Plaid").create_link_token(req.user_id)
    return {"link_token": link_token}


@router.post("/exchange-public-token")
def exchange_public_token(req: ExchangeTokenRequest, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    auth.require_profile(db, req.user_id)
    plaid = _require(services.plaid, "Plaid")
    access_token, item_id = plaid.exchange_public_token(req.public_token)

    institution = ((req.metadata or {}).get("institution") or {}).get("name")
    if not institution:
        institution = plaid.institution_name(access_token)

    conn = bank_sync.upsert_connection(db, req.user_id, item_id, access_token, institution)
    return {"success": True, "item_id": conn.item_id, "institution_name": conn.institution_name}


@router.post("/list-connections")
def list_connections(req: UserRequest, db: Session = Depends(get_db)):
    auth.require_profile(db, req.user_id)
    conns = db.query(PlaidConnection).filter(PlaidConnection.user_id == req.user_id).all()
    return {
        "connections": [
            {
                "item_id": c.item_id,
                "institution_name": c.institution_name,
                "last_synced_at": c.last_synced_at.isoformat() if c.last_synced_at else None,
            }
            for c in conns
        ]
    }


@router.post("/sync-connection")
def sync_connection(req: ItemRequest, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    auth.require_profile(db, req.user_id)
    conn = (
        db.query(PlaidConnection)
        .filter(PlaidConnection.item_id == req.item_id, PlaidConnection.user_id == req.user_id)
        .first()
    )
    if conn is None:
        raise DataIntegrityError(f"No connection found for item_id: {req.item_id}")
    counts = bank_sync.sync_connection(db, _require(services.plaid, "Plaid"), conn)
    return {"success": True, "synced": counts}


def _dispatch_webhook(payload: dict, db: Session, services: Services) -> dict:
    try:
        event = bank_sync.parse_webhook(payload)
    except ValidationError as e:
        raise InvalidRequestError(f"Unrecognised webhook payload: {e.error_count()} errors") from e
    logger.info("plaid_webhook_received", webhook_type=event.webhook_type, webhook_code=event.webhook_code)
    return bank_sync.handle_webhook(db, services.plaid, services.push, event)


@router.post("/plaid-webhook")
def plaid_webhook(payload: dict = Body(...), db: Session = Depends(get_db), services: Services = Depends(get_services)):
    return _dispatch_webhook(payload, db, services)


@router.post("/simulate-plaid-webhook")
def simulate_plaid_webhook(req: ItemRequest, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    logger.info("simulating_webhook", item_id=req.item_id)
    result = _dispatch_webhook(bank_sync.simulated_webhook(req.item_id), db, services)
    return {"success": True, "message": "Webhook simulation completed", "result": result}


# --- Push ---

@router.post("/register-device-token")
def register_device_token(req: RegisterTokenRequest, db: Session = Depends(get_db)):
    auth.require_profile(db, req.user_id)
    push_service.register_token(db, req.user_id, req.token)
    return {"success": True}


@router.post("/send-push-notification")
def send_push_notification(req: PushRequest, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    result = _require(services.push, "Push messaging").send(db, req.tokens, req.title, req.body, req.data)
    return {
        "success": True,
        "success_count": result.success_count,
        "failure_count": result.failure_count,
        "removed_tokens": len(result.removed_tokens),
    }


@router.post("/transaction-webhook")
def transaction_webhook(req: DatabaseWebhookRequest, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    if req.table != "transactions" or req.type != "INSERT":
        return {"success": True, "skipped": True}
    push_service.notify_new_transaction(db, _require(services.push, "Push messaging"), req.record)
    return {"success": True}


# --- App ---

def create_app(
    settings: Optional[Settings] = None,
    session_factory=None,
    services: Optional[Services] = None,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    if session_factory is None:
        engine = make_engine(settings.database_url)
        init_db(engine)
        session_factory = make_session_factory(engine)

    app = FastAPI(title="Finance Chat Functions", version="0.1.0")
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.services = services or build_services(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["POST", "OPTIONS"],
        allow_headers=CORS_HEADERS,
        max_age=86400,
    )

    @app.exception_handler(FinanceChatError)
    async def finance_chat_error_handler(request: Request, exc: FinanceChatError):
        logger.error("function_failed", path=request.url.path, code=exc.code, error=str(exc))
        return JSONResponse({"error": str(exc), "code": exc.code}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = sorted({".".join(str(p) for p in err["loc"][1:]) for err in exc.errors()} - {""})
        message = f"Missing or invalid fields: {', '.join(fields)}" if fields else "Invalid request body"
        return JSONResponse({"error": message, "code": InvalidRequestError.code}, status_code=400)

    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/sw.js")
    async def service_worker():
        return FileResponse(STATIC_DIR / "sw.js", media_type="application/javascript")

    storage = app.state.services.storage
    if not storage.bucket:
        app.mount("/storage", StaticFiles(directory=storage.local_root, check_dir=False), name="storage")

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("functions_server:create_app", factory=True, host="0.0.0.0", port=8000, reload=True)
