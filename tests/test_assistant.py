import json
from types import SimpleNamespace

import httpx
import openai
import pytest

import transactions
from assistant import TOOLS, AssistantRunner, ToolExecutor, generate_completion
from conftest import FakeOcr, FakeOpenAI, make_run, tool_call
from errors import ActiveRunError, ExternalServiceError, RunFailedError, RunTimeoutError


def make_runner(client, ocr=None, max_attempts=5, sleeps=None):
    return AssistantRunner(
        client,
        "asst_test",
        ocr=ocr,
        poll_interval=1.0,
        max_attempts=max_attempts,
        sleep=(sleeps.append if sleeps is not None else lambda s: None),
    )


def test_respond_creates_thread_and_returns_reply(db, profile):
    client = FakeOpenAI(reply="Your books look healthy.")
    reply = make_runner(client).respond("How am I doing?", ToolExecutor(db, profile.id))

    assert reply.text == "Your books look healthy."
    assert reply.thread_id == "thread_new"
    assert reply.run_id == "run_1"
    assert client.messages.created[0]["content"] == "How am I doing?"
    assert client.runs.created[0]["assistant_id"] == "asst_test"
    assert client.runs.created[0]["tools"] == TOOLS


def test_respond_reuses_existing_thread(db, profile):
    client = FakeOpenAI()
    reply = make_runner(client).respond("Hi", ToolExecutor(db, profile.id), thread_id="thread_existing")

    assert reply.thread_id == "thread_existing"
    assert client.messages.created[0]["thread_id"] == "thread_existing"


def test_tool_calls_are_executed_and_submitted(db, profile):
    call = tool_call("call_1", "add_expense", {"amount": 50, "category": "food", "date": "01-05-2024"})
    client = FakeOpenAI(statuses=[
        make_run("run_1", "requires_action", tool_calls=[call]),
        make_run("run_1", "completed"),
    ])

    make_runner(client).respond("I spent 50 on food on 1 May", ToolExecutor(db, profile.id))

    [txn] = transactions.fetch_user_transactions(db, profile.id)
    assert txn.amount == -50
    assert txn.source == "assistant"

    [output] = client.runs.submitted
    assert output["tool_call_id"] == "call_1"
    assert json.loads(output["output"])["success"] is True


def test_failed_run_is_not_a_timeout(db, profile):
    error = SimpleNamespace(message="rate limited")
    client = FakeOpenAI(statuses=[make_run("run_1", "failed", last_error=error)])

    with pytest.raises(RunFailedError, match="rate limited"):
        make_runner(client).respond("Hi", ToolExecutor(db, profile.id))
    assert client.runs.cancelled == []


def test_run_exceeding_budget_times_out_and_is_cancelled(db, profile):
    sleeps = []
    client = FakeOpenAI(statuses=[make_run("run_1", "in_progress")])

    with pytest.raises(RunTimeoutError) as exc_info:
        make_runner(client, max_attempts=3, sleeps=sleeps).respond("Hi", ToolExecutor(db, profile.id))

    assert not isinstance(exc_info.value, RunFailedError)
    assert exc_info.value.code == "run_timeout"
    assert client.runs.cancelled == ["run_1"]
    assert sleeps == [1.0, 1.0]


def test_active_run_is_cancelled_before_starting(db, profile):
    sleeps = []
    client = FakeOpenAI(active=[make_run("run_old", "in_progress")])

    make_runner(client, sleeps=sleeps).respond("Hi", ToolExecutor(db, profile.id), thread_id="thread_existing")

    assert client.runs.cancelled == ["run_old"]
    assert sleeps[0] == 1.0


def test_active_run_conflict_surfaces_as_active_run_error(db, profile):
    client = FakeOpenAI()
    response = httpx.Response(400, request=httpx.Request("POST", "https://api.openai.com/v1/threads/t/runs"))

    def conflict(thread_id, assistant_id, tools):
        raise openai.BadRequestError("Thread t already has an active run run_x.", response=response, body=None)

    client.runs.create = conflict

    with pytest.raises(ActiveRunError):
        make_runner(client).respond("Hi", ToolExecutor(db, profile.id))


def test_unexpected_tool_error_cancels_the_run(db, profile, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(transactions, "fetch_user_transactions", broken)
    client = FakeOpenAI(statuses=[
        make_run("run_1", "requires_action", tool_calls=[tool_call("call_1", "fetch_transactions", {})]),
    ])

    with pytest.raises(RuntimeError):
        make_runner(client).respond("What did I spend?", ToolExecutor(db, profile.id))

    assert client.runs.cancelled == ["run_1"]
    assert client.runs.submitted == []


def test_image_text_is_folded_into_message():
    runner = make_runner(FakeOpenAI(), ocr=FakeOcr(text="TOTAL 12.50"))

    content = runner.compose_message("Log this receipt", "http://files/r.png", "image/png")

    assert content == "Log this receipt\n\nExtracted text from image:\nTOTAL 12.50"


def test_ocr_failure_falls_back_to_image_url():
    runner = make_runner(FakeOpenAI(), ocr=FakeOcr(error=ExternalServiceError("tesseract missing")))

    content = runner.compose_message("Log this receipt", "http://files/r.png", "image/png")

    assert content == "Log this receipt\nImage: http://files/r.png"


def test_documents_and_other_files_are_referenced():
    runner = make_runner(FakeOpenAI())

    assert runner.compose_message("Read it", "http://files/a.csv", "text/csv") == "Read it\nFile: http://files/a.csv"
    assert runner.compose_message("Read it", document_id="doc-1") == "Read it\nDocument ID: doc-1"


def test_file_without_a_type_is_classified_by_extension():
    ocr = FakeOcr(text="TOTAL 12.50")
    runner = make_runner(FakeOpenAI(), ocr=ocr)

    assert runner.compose_message("Read it", "http://files/statement.pdf") == "Read it\nFile: http://files/statement.pdf"
    assert "TOTAL 12.50" in runner.compose_message("Log it", "http://files/r.jpg?token=1")
    assert ocr.urls == ["http://files/r.jpg?token=1"]


def test_tool_executor_reports_problems_to_the_model(db, profile):
    tools = ToolExecutor(db, profile.id)

    assert "unknown tool" in json.loads(tools.execute("make_coffee", "{}"))["error"]
    assert "JSON object" in json.loads(tools.execute("add_income", "[1, 2]"))["error"]
    assert "Category" in json.loads(tools.execute("add_income", json.dumps({"amount": 10})))["error"]
    assert "Document ID" in json.loads(tools.execute("get_pdf_images", "{}"))["error"]


def test_fetch_transactions_tool(db, profile):
    transactions.add_income(db, profile.id, 100, "sales", "2024-05-01")
    tools = ToolExecutor(db, profile.id)

    result = json.loads(tools.execute("fetch_transactions", json.dumps({"category": "sales"})))

    assert [t["amount"] for t in result["transactions"]] == [100]


def test_generate_completion_sends_image_part():
    client = FakeOpenAI(completion="A coffee receipt")

    text = generate_completion(client, "gpt-4o-mini", "What is this?", "http://files/r.png")

    assert text == "A coffee receipt"
    user_message = client.completions.calls[0]["messages"][1]
    assert user_message["content"][1] == {"type": "image_url", "image_url": {"url": "http://files/r.png"}}


def test_generate_completion_plain_prompt():
    client = FakeOpenAI()

    generate_completion(client, "gpt-4o-mini", "Hello")

    assert client.completions.calls[0]["messages"][1] == {"role": "user", "content": "Hello"}
