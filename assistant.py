"""
assistant.py
------------

Orchestrates the LLM side of the chat:

* ``generate_completion`` is the plain chat-completions call used by the
  ``generate-response`` function, optionally with an image attached.
* ``AssistantRunner`` drives an assistant thread: create or reuse the
  thread, add the user's message (with OCR text folded in for images),
  start a run with the four finance tools, poll it until it finishes,
  execute tool calls locally, and return the latest assistant reply.

The run lifecycle itself belongs to the provider; this module only polls
it with a bounded budget.
"""

import json
import mimetypes
import time
from dataclasses import dataclass
from typing import Callable, Optional

import openai
import structlog
from sqlalchemy.orm import Session

import documents
import transactions
from errors import (
    ActiveRunError,
    ExternalServiceError,
    FinanceChatError,
    RunFailedError,
    RunTimeoutError,
)
from ocr import OcrService
from polling import BoundedPoller, PollState

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = "You are a helpful AI assistant that can help users with their questions and tasks."

ACTIVE_RUN_STATUSES = {"queued", "in_progress", "requires_action", "cancelling"}
FAILED_RUN_STATUSES = {"failed", "cancelled", "expired", "incomplete"}
CANCEL_SETTLE_SECONDS = 1.0

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "fetch_transactions",
            "description": "Fetch the user's transactions, newest first, optionally filtered by date range and category.",
            "parameters": {
                "type": "object",
                "properties": {
                    "start_date": {"type": "string", "description": "Inclusive start date, YYYY-MM-DD"},
                    "end_date": {"type": "string", "description": "Inclusive end date, YYYY-MM-DD"},
                    "category": {"type": "string"},
                },
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "add_income",
            "description": "Record money the user received.",
            "parameters": {
                "type": "object",
                "properties": {
                    "amount": {"type": "number", "description": "Positive amount received"},
                    "category": {"type": "string"},
                    "date": {"type": "string", "description": "DD-MM-YYYY or YYYY-MM-DD; defaults to today"},
                    "description": {"type": "string"},
                },
                "required": ["amount", "category"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "add_expense",
            "description": "Record money the user spent.",
            "parameters": {
                "type": "object",
                "properties": {
                    "amount": {"type": "number", "description": "Positive amount spent"},
                    "category": {"type": "string"},
                    "date": {"type": "string", "description": "DD-MM-YYYY or YYYY-MM-DD; defaults to today"},
                    "description": {"type": "string"},
                },
                "required": ["amount", "category"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_pdf_images",
            "description": "Get the page images of an uploaded PDF document, in page order.",
            "parameters": {
                "type": "object",
                "properties": {"document_id": {"type": "string"}},
                "required": ["document_id"],
            },
        },
    },
]


def generate_completion(client, model: str, prompt: str, file_url: Optional[str] = None) -> str:
    """Single chat-completions call; an attached file is sent as an image part."""
    if file_url:
        user_content = [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": file_url}},
        ]
    else:
        user_content = prompt

    try:
        response = client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user_content},
            ],
            temperature=0.7,
            max_tokens=1000,
        )
    except openai.OpenAIError as e:
        raise ExternalServiceError(f"OpenAI API error: {e}") from e

    if not response.choices or response.choices[0].message is None:
        raise ExternalServiceError("Invalid response format from OpenAI")
    return response.choices[0].message.content or ""


class ToolExecutor:
    """Runs the assistant's tool calls against the database for one user."""

    def __init__(self, db: Session, user_id: str):
        self.db = db
        self.user_id = user_id
        self._handlers = {
            "fetch_transactions": self.fetch_transactions,
            "add_income": self.add_income,
            "add_expense": self.add_expense,
            "get_pdf_images": self.get_pdf_images,
        }

    def fetch_transactions(self, start_date=None, end_date=None, category=None, **_):
        txns = transactions.fetch_user_transactions(self.db, self.user_id, start_date, end_date, category)
        return {"transactions": [transactions.transaction_to_dict(t) for t in txns]}

    def add_income(self, amount=None, category=None, date=None, description=None, **_):
        txn = transactions.add_income(self.db, self.user_id, amount, category, date, description, source="assistant")
        return {"success": True, "data": transactions.transaction_to_dict(txn)}

    def add_expense(self, amount=None, category=None, date=None, description=None, **_):
        txn = transactions.add_expense(self.db, self.user_id, amount, category, date, description, source="assistant")
        return {"success": True, "data": transactions.transaction_to_dict(txn)}

    def get_pdf_images(self, document_id=None, **_):
        return {"pages": documents.get_pdf_images(self.db, document_id)}

    def execute(self, name: str, arguments: str) -> str:
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("unknown_tool", tool=name)
            return json.dumps({"error": f"unknown tool: {name}"})

        try:
            kwargs = json.loads(arguments or "{}")
        except json.JSONDecodeError:
            kwargs = None
        if not isinstance(kwargs, dict):
            return json.dumps({"error": "tool arguments must be a JSON object"})

        try:
            result = handler(**kwargs)
        except FinanceChatError as e:
            # Let the model see the problem and correct itself
            logger.warning("tool_failed", tool=name, error=str(e))
            return json.dumps({"error": str(e)})

        logger.info("tool_executed", tool=name)
        return json.dumps(result, default=str)


@dataclass
class AssistantReply:
    text: str
    thread_id: str
    run_id: str


class AssistantRunner:
    def __init__(
        self,
        client,
        assistant_id: str,
        ocr: Optional[OcrService] = None,
        poll_interval: float = 1.0,
        max_attempts: int = 60,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._threads = client.beta.threads
        self.assistant_id = assistant_id
        self.ocr = ocr
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    def ensure_thread(self, thread_id: Optional[str] = None) -> str:
        if thread_id:
            return thread_id
        thread = self._threads.create()
        logger.info("thread_created", thread_id=thread.id)
        return thread.id

    def compose_message(
        self,
        prompt: str,
        file_url: Optional[str] = None,
        file_type: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> str:
        content = prompt
        if file_url and file_type is None:
            file_type = mimetypes.guess_type(file_url.split("?", 1)[0])[0]
        if file_url and file_type and file_type.startswith("image/"):
            text = ""
            if self.ocr is not None:
                try:
                    text = self.ocr.extract_text(file_url)
                except ExternalServiceError as e:
                    logger.warning("ocr_fallback", error=str(e))
            if text:
                content = f"{content}\n\nExtracted text from image:\n{text}"
            else:
                content = f"{content}\nImage: {file_url}"
        elif file_url:
            content = f"{content}\nFile: {file_url}"

        if document_id:
            content = f"{content}\nDocument ID: {document_id}"
        return content

    def add_message(self, thread_id: str, content: str):
        self._threads.messages.create(thread_id, role="user", content=content)

    def cancel_run(self, thread_id: str, run_id: str):
        try:
            self._threads.runs.cancel(run_id, thread_id=thread_id)
            logger.info("run_cancelled", thread_id=thread_id, run_id=run_id)
        except openai.OpenAIError as e:
            logger.error("run_cancel_failed", run_id=run_id, error=str(e))

    def cancel_active_run(self, thread_id: str) -> Optional[str]:
        runs = self._threads.runs.list(thread_id, limit=10)
        for run in runs.data:
            if run.status in ACTIVE_RUN_STATUSES:
                logger.info("active_run_found", run_id=run.id, status=run.status)
                self.cancel_run(thread_id, run.id)
                self._sleep(CANCEL_SETTLE_SECONDS)
                return run.id
        return None

    def start_run(self, thread_id: str):
        self.cancel_active_run(thread_id)
        try:
            return self._threads.runs.create(thread_id, assistant_id=self.assistant_id, tools=TOOLS)
        except openai.BadRequestError as e:
            if "already has an active run" in str(e):
                raise ActiveRunError(str(e)) from e
            raise

    def _submit_tool_outputs(self, thread_id: str, run, tools: ToolExecutor):
        outputs = []
        for call in run.required_action.submit_tool_outputs.tool_calls:
            try:
                output = tools.execute(call.function.name, call.function.arguments)
            except Exception:
                # The run would otherwise sit in requires_action until it expires
                self.cancel_run(thread_id, run.id)
                raise
            outputs.append({"tool_call_id": call.id, "output": output})
        self._threads.runs.submit_tool_outputs(run.id, thread_id=thread_id, tool_outputs=outputs)

    def wait_for_run(self, thread_id: str, run_id: str, tools: ToolExecutor):
        def step():
            run = self._threads.runs.retrieve(run_id, thread_id=thread_id)
            logger.debug("run_status", run_id=run_id, status=run.status)
            if run.status == "completed":
                return PollState.SUCCEEDED, run
            if run.status in FAILED_RUN_STATUSES:
                return PollState.FAILED, run
            if run.status == "requires_action" and run.required_action is not None:
                self._submit_tool_outputs(thread_id, run, tools)
            return PollState.POLLING, run

        outcome = BoundedPoller(self.poll_interval, self.max_attempts, sleep=self._sleep).run(step)
        if outcome.state == PollState.TIMED_OUT:
            self.cancel_run(thread_id, run_id)
            raise RunTimeoutError(
                f"Run {run_id} did not finish after {outcome.attempts} status checks"
            )
        if outcome.state == PollState.FAILED:
            run = outcome.value
            reason = run.last_error.message if getattr(run, "last_error", None) else run.status
            raise RunFailedError(f"Assistant run {run.status}: {reason}")
        return outcome.value

    def latest_reply(self, thread_id: str) -> str:
        messages = self._threads.messages.list(thread_id, order="desc", limit=10)
        for message in messages.data:
            if message.role != "assistant":
                continue
            parts = [block.text.value for block in message.content if block.type == "text"]
            if parts:
                return "\n".join(parts)
        raise ExternalServiceError("The assistant did not return a message")

    def respond(
        self,
        prompt: str,
        tools: ToolExecutor,
        thread_id: Optional[str] = None,
        file_url: Optional[str] = None,
        file_type: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> AssistantReply:
        try:
            thread_id = self.ensure_thread(thread_id)
            self.add_message(thread_id, self.compose_message(prompt, file_url, file_type, document_id))
            run = self.start_run(thread_id)
            logger.info("run_started", thread_id=thread_id, run_id=run.id)
            self.wait_for_run(thread_id, run.id, tools)
            text = self.latest_reply(thread_id)
        except openai.OpenAIError as e:
            raise ExternalServiceError(f"OpenAI API error: {e}") from e

        logger.info("run_completed", thread_id=thread_id, run_id=run.id)
        return AssistantReply(text=text, thread_id=thread_id, run_id=run.id)
