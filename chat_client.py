"""
chat_client.py
--------------

HTTP client for the backend functions, used by the Streamlit app.

Every function is a JSON POST to ``{base_url}/functions/v1/<name>``.
Non-2xx answers are raised as ``FunctionCallError`` carrying the status
and the ``code`` from the error body. Asking the assistant is retried
with exponential backoff; a conflicting active run waits a fixed delay
instead. Document processing is polled until it completes, fails or the
attempt budget runs out.
"""

import base64
import time
from typing import Callable, Optional

import httpx
import structlog

from errors import DocumentProcessingError
from polling import BoundedPoller, PollState, retry_with_backoff

logger = structlog.get_logger(__name__)

MAX_RETRIES = 3
RETRY_DELAY = 2.0
ACTIVE_RUN_DELAY = 3.0
DOCUMENT_POLL_INTERVAL = 2.0
DOCUMENT_POLL_ATTEMPTS = 30

NO_RETRY_CODES = {"run_timeout", "data_integrity", "invalid_request", "unauthenticated"}


class FunctionCallError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class PollTimeoutError(Exception):
    """The document never reached a final status within the attempt budget."""


# Everything a call can end in once retries are spent
CALL_ERRORS = (FunctionCallError, httpx.HTTPError, DocumentProcessingError, PollTimeoutError)


def error_message(exc: Exception) -> str:
    """Text to show the user for one of ``CALL_ERRORS``."""
    if isinstance(exc, FunctionCallError):
        return exc.message
    if isinstance(exc, httpx.HTTPError):
        return "Could not reach the server. Please try again."
    return str(exc)


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, FunctionCallError):
        if exc.code == "active_run":
            return True
        return exc.status_code >= 500 and exc.code not in NO_RETRY_CODES
    return False


def _retry_delay(exc: Exception, attempt: int) -> Optional[float]:
    if isinstance(exc, FunctionCallError) and exc.code == "active_run":
        return ACTIVE_RUN_DELAY
    return None


def encode_file(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class FunctionsClient:
    def __init__(
        self,
        base_url: str,
        http: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout: float = 120.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.http = http or httpx.Client(timeout=timeout)
        self._sleep = sleep

    def invoke(self, name: str, body: dict) -> dict:
        response = self.http.post(f"{self.base_url}/functions/v1/{name}", json=body)
        if response.is_success:
            return response.json()

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        error = FunctionCallError(
            response.status_code,
            payload.get("code", "http_error"),
            payload.get("error") or response.text or f"HTTP {response.status_code}",
        )
        logger.warning("function_call_failed", function=name, status=error.status_code, code=error.code)
        raise error

    def _with_retry(self, name: str, body: dict) -> dict:
        return retry_with_backoff(
            lambda: self.invoke(name, body),
            retries=MAX_RETRIES,
            base_delay=RETRY_DELAY,
            is_retryable=_is_retryable,
            delay_for=_retry_delay,
            sleep=self._sleep,
        )

    # --- Profiles & chat history ---

    def sign_up(self, username: str, password: str, first_name: str = None, last_name: str = None) -> dict:
        return self.invoke("sign-up", {
            "username": username,
            "password": password,
            "first_name": first_name,
            "last_name": last_name,
        })

    def sign_in(self, username: str, password: str) -> dict:
        return self.invoke("sign-in", {"username": username, "password": password})

    def chat_history(self, user_id: str) -> list:
        return self.invoke("chat-history", {"user_id": user_id})["messages"]

    def save_message(self, user_id: str, content: str, sender: str, thread_id: str = None, file: dict = None) -> dict:
        return self.invoke("save-message", {
            "user_id": user_id,
            "content": content,
            "sender": sender,
            "thread_id": thread_id,
            "file": file,
        })

    def upload_file(self, user_id: str, file_name: str, data: bytes, content_type: str) -> dict:
        return self.invoke("upload-file", {
            "user_id": user_id,
            "file_name": file_name,
            "content_type": content_type,
            "content_base64": encode_file(data),
        })

    # --- Assistant ---

    def generate_response(self, user_id: str, prompt: str, file_url: str = None) -> dict:
        return self._with_retry("generate-response", {"prompt": prompt, "userId": user_id, "fileUrl": file_url})

    def ask_assistant(
        self,
        user_id: str,
        prompt: str,
        thread_id: str = None,
        file_url: str = None,
        file_type: str = None,
        document_id: str = None,
    ) -> dict:
        return self._with_retry("assistant-response", {
            "prompt": prompt,
            "userId": user_id,
            "threadId": thread_id,
            "fileUrl": file_url,
            "fileType": file_type,
            "documentId": document_id,
        })

    def cancel_run(self, thread_id: str, run_id: str) -> dict:
        return self.invoke("cancel-run", {"thread_id": thread_id, "run_id": run_id})

    # --- Transactions ---

    def add_expense(self, user_id: str, amount: float, category: str, date: str = None, description: str = None) -> dict:
        return self.invoke("add-expense", {
            "userId": user_id, "amount": amount, "category": category, "date": date, "description": description,
        })

    def add_income(self, user_id: str, amount: float, category: str, date: str = None, description: str = None) -> dict:
        return self.invoke("add-income", {
            "userId": user_id, "amount": amount, "category": category, "date": date, "description": description,
        })

    def fetch_transactions(self, user_id: str, start_date: str = None, end_date: str = None, category: str = None) -> list:
        return self.invoke("fetch-user-transactions", {
            "user_id": user_id, "start_date": start_date, "end_date": end_date, "category": category,
        })["transactions"]

    def delete_transaction(self, user_id: str, transaction_id: int) -> dict:
        return self.invoke("delete-transaction", {"user_id": user_id, "transaction_id": transaction_id})

    def attach_transaction_image(
        self, user_id: str, file_name: str, data: bytes, content_type: str, transaction_id: int = None
    ) -> dict:
        return self.invoke("attach-transaction-image", {
            "user_id": user_id,
            "transaction_id": transaction_id,
            "file_name": file_name,
            "content_type": content_type,
            "content_base64": encode_file(data),
        })

    # --- Documents ---

    def process_image(self, image_url: str) -> str:
        return self.invoke("process-image", {"imageUrl": image_url})["text"]

    def create_document(self, user_id: str, file_url: str, original_name: str) -> str:
        return self.invoke("create-document", {
            "user_id": user_id, "file_url": file_url, "original_name": original_name,
        })["document_id"]

    def process_pdf(self, document_id: str, file_url: str = None) -> dict:
        return self.invoke("process-pdf", {"documentId": document_id, "fileUrl": file_url})

    def document_status(self, document_id: str) -> dict:
        return self.invoke("document-status", {"document_id": document_id})

    def wait_for_document(
        self,
        document_id: str,
        interval: float = DOCUMENT_POLL_INTERVAL,
        max_attempts: int = DOCUMENT_POLL_ATTEMPTS,
    ) -> dict:
        """Poll document-status until the pages are ready. Returns the final status body."""

        def step():
            status = self.document_status(document_id)
            if status["status"] == "completed":
                return PollState.SUCCEEDED, status
            if status["status"] == "error":
                return PollState.FAILED, status
            return PollState.POLLING, status

        outcome = BoundedPoller(interval, max_attempts, sleep=self._sleep).run(step)
        if outcome.state == PollState.FAILED:
            raise DocumentProcessingError(f"Processing failed for document {document_id}")
        if outcome.state == PollState.TIMED_OUT:
            raise PollTimeoutError(f"Document {document_id} still processing after {outcome.attempts} checks")
        return outcome.value

    # --- Bank linking ---

    def create_link_token(self, user_id: str) -> str:
        return self.invoke("create-link-token", {"user_id": user_id})["link_token"]

    def exchange_public_token(self, user_id: str, public_token: str, metadata: dict = None) -> dict:
        return self.invoke("exchange-public-token", {
            "user_id": user_id, "public_token": public_token, "metadata": metadata,
        })

    def list_connections(self, user_id: str) -> list:
        return self.invoke("list-connections", {"user_id": user_id})["connections"]

    def sync_connection(self, user_id: str, item_id: str) -> dict:
        return self.invoke("sync-connection", {"user_id": user_id, "item_id": item_id})

    def simulate_plaid_webhook(self, item_id: str) -> dict:
        return self.invoke("simulate-plaid-webhook", {"item_id": item_id})

    # --- Push ---

    def register_device_token(self, user_id: str, token: str) -> dict:
        return self.invoke("register-device-token", {"user_id": user_id, "token": token})
