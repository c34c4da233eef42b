import io
import json
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from auth import sign_up
from config import Settings
from database import init_db, make_session_factory
from functions_server import create_app
from plaid_integration import SyncDelta
from push import PushService
from services import Services
from storage import ObjectStorage


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def profile(db):
    return sign_up(db, "alice", "secret123", first_name="Alice")


@pytest.fixture
def storage(tmp_path):
    return ObjectStorage(local_root=tmp_path / "storage", public_base_url="http://testserver")


def make_pdf(pages: int) -> bytes:
    images = [Image.new("RGB", (200, 280), color=(255, 255, 255 - i * 40)) for i in range(pages)]
    buffer = io.BytesIO()
    images[0].save(buffer, format="PDF", save_all=True, append_images=images[1:])
    return buffer.getvalue()


def make_png() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (10, 10), color="white").save(buffer, format="PNG")
    return buffer.getvalue()


# --- Fakes ---

class FakeOcr:
    def __init__(self, text="", error=None):
        self.text = text
        self.error = error
        self.urls = []

    def extract_text(self, image_url):
        self.urls.append(image_url)
        if self.error:
            raise self.error
        return self.text


def make_run(run_id, status, tool_calls=None, last_error=None):
    required_action = None
    if tool_calls:
        required_action = SimpleNamespace(submit_tool_outputs=SimpleNamespace(tool_calls=tool_calls))
    return SimpleNamespace(id=run_id, status=status, required_action=required_action, last_error=last_error)


def tool_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=json.dumps(arguments)))


class FakeRuns:
    def __init__(self, statuses, active=None):
        # Each retrieve() pops the next run; the last one repeats forever
        self.statuses = list(statuses)
        self.active = active or []
        self.created = []
        self.cancelled = []
        self.submitted = []

    def create(self, thread_id, assistant_id, tools):
        self.created.append({"thread_id": thread_id, "assistant_id": assistant_id, "tools": tools})
        return make_run("run_1", "queued")

    def retrieve(self, run_id, thread_id):
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    def list(self, thread_id, limit=10):
        return SimpleNamespace(data=self.active)

    def cancel(self, run_id, thread_id):
        self.cancelled.append(run_id)

    def submit_tool_outputs(self, run_id, thread_id, tool_outputs):
        self.submitted.extend(tool_outputs)


class FakeMessages:
    def __init__(self, reply):
        self.reply = reply
        self.created = []

    def create(self, thread_id, role, content):
        self.created.append({"thread_id": thread_id, "role": role, "content": content})

    def list(self, thread_id, order="desc", limit=10):
        block = SimpleNamespace(type="text", text=SimpleNamespace(value=self.reply))
        return SimpleNamespace(data=[SimpleNamespace(role="assistant", content=[block])])


class FakeThreads:
    def __init__(self, runs, messages):
        self.runs = runs
        self.messages = messages

    def create(self):
        return SimpleNamespace(id="thread_new")


class FakeCompletions:
    def __init__(self, text):
        self.text = text
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.text)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeOpenAI:
    def __init__(self, statuses=None, reply="Done!", active=None, completion="Hello from the model"):
        self.runs = FakeRuns(statuses or [make_run("run_1", "completed")], active)
        self.messages = FakeMessages(reply)
        self.completions = FakeCompletions(completion)
        self.beta = SimpleNamespace(threads=FakeThreads(self.runs, self.messages))
        self.chat = SimpleNamespace(completions=self.completions)


class FakePlaid:
    def __init__(self, delta=None):
        self.delta = delta or SyncDelta(next_cursor="cursor-1")
        self.sync_calls = []

    def create_link_token(self, user_id):
        return f"link-sandbox-{user_id}"

    def exchange_public_token(self, public_token):
        return "access-sandbox-1", "item-1"

    def institution_name(self, access_token):
        return "First Platypus Bank"

    def sync_transactions(self, access_token, cursor=None):
        self.sync_calls.append(cursor)
        return SyncDelta(
            added=list(self.delta.added),
            modified=list(self.delta.modified),
            removed=list(self.delta.removed),
            next_cursor=self.delta.next_cursor,
        )


class FakeBatch:
    def __init__(self, responses):
        self.responses = responses
        self.success_count = sum(1 for r in responses if r.success)
        self.failure_count = len(responses) - self.success_count


class FakeSender:
    """Stands in for messaging.send_each_for_multicast."""

    def __init__(self, errors=None):
        self.errors = errors or {}
        self.messages = []

    def __call__(self, message):
        self.messages.append(message)
        responses = []
        for token in message.tokens:
            error = self.errors.get(token)
            responses.append(SimpleNamespace(success=error is None, exception=error))
        return FakeBatch(responses)


@pytest.fixture
def fake_openai():
    return FakeOpenAI()


@pytest.fixture
def fake_plaid():
    return FakePlaid()


@pytest.fixture
def fake_sender():
    return FakeSender()


@pytest.fixture
def services(storage, fake_openai, fake_plaid, fake_sender):
    return Services(
        storage=storage,
        openai=fake_openai,
        plaid=fake_plaid,
        push=PushService(fake_sender),
        ocr=FakeOcr(text="TOTAL 12.50"),
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        assistant_id="asst_test",
        functions_base_url="http://testserver",
        local_storage_dir=str(tmp_path / "storage"),
        run_poll_interval=0,
        run_poll_attempts=3,
        log_level="WARNING",
    )


@pytest.fixture
def client(settings, session_factory, services):
    app = create_app(settings, session_factory, services)
    with TestClient(app) as test_client:
        yield test_client
