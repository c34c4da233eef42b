import base64

from conftest import make_pdf, make_png, make_run
from database import PlaidConnection, Transaction
from plaid_integration import SyncDelta

BASE = "/functions/v1"


def call(client, name, body):
    return client.post(f"{BASE}/{name}", json=body)


def sign_up(client, username="bob"):
    response = call(client, "sign-up", {"username": username, "password": "secret123"})
    assert response.status_code == 200
    return response.json()["user_id"]


def test_cors_preflight(client):
    response = client.options(
        f"{BASE}/add-expense",
        headers={
            "Origin": "http://localhost:5173",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "authorization, x-client-info, apikey, content-type",
        },
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"
    assert "apikey" in response.headers["access-control-allow-headers"].lower()


def test_sign_up_and_sign_in(client):
    user_id = sign_up(client)

    assert call(client, "sign-in", {"username": "bob", "password": "secret123"}).json()["user_id"] == user_id

    wrong = call(client, "sign-in", {"username": "bob", "password": "nope"})
    assert wrong.status_code == 401
    assert wrong.json() == {"error": "Invalid username or password", "code": "unauthenticated"}


def test_missing_user_is_unauthenticated(client):
    response = call(client, "add-expense", {"amount": 5, "category": "food"})

    assert response.status_code == 401
    assert response.json()["code"] == "unauthenticated"


def test_missing_fields_are_invalid_requests(client):
    response = call(client, "add-expense", {"userId": "x"})

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "invalid_request"
    assert "amount" in body["error"] and "category" in body["error"]


def test_add_expense_example(client):
    user_id = sign_up(client)

    response = call(client, "add-expense", {"amount": 50, "category": "food", "date": "01-05-2024", "userId": user_id})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["amount"] == -50
    assert data["type"] == "expense"
    assert data["date"] == "2024-05-01"


def test_transactions_round_trip(client):
    user_id = sign_up(client)
    call(client, "add-income", {"amount": 900, "category": "sales", "date": "2024-04-02", "userId": user_id})
    expense = call(client, "add-expense", {"amount": 12, "category": "food", "date": "2024-04-03", "userId": user_id}).json()

    listed = call(client, "fetch-user-transactions", {"user_id": user_id}).json()["transactions"]
    assert [t["category"] for t in listed] == ["food", "sales"]

    attach = call(client, "attach-transaction-image", {
        "user_id": user_id,
        "transaction_id": expense["data"]["id"],
        "file_name": "receipt.png",
        "content_type": "image/png",
        "content_base64": base64.b64encode(make_png()).decode(),
    })
    assert attach.status_code == 200
    assert client.get(attach.json()["image_url"].replace("http://testserver", "")).content == make_png()

    deleted = call(client, "delete-transaction", {"user_id": user_id, "transaction_id": expense["data"]["id"]})
    assert deleted.json() == {"success": True}

    missing = call(client, "delete-transaction", {"user_id": user_id, "transaction_id": 999})
    assert missing.status_code == 400
    assert missing.json()["code"] == "data_integrity"


def test_chat_history(client):
    user_id = sign_up(client)
    call(client, "save-message", {"user_id": user_id, "content": "Hi", "sender": "user"})
    call(client, "save-message", {
        "user_id": user_id, "content": "Hello!", "sender": "assistant", "thread_id": "thread_1",
        "file": {"url": "http://files/x.png", "type": "image/png", "name": "x.png"},
    })

    messages = call(client, "chat-history", {"user_id": user_id}).json()["messages"]

    assert [m["sender"] for m in messages] == ["user", "assistant"]
    assert messages[1]["file"]["name"] == "x.png"
    assert messages[1]["thread_id"] == "thread_1"

    bad = call(client, "save-message", {"user_id": user_id, "content": "?", "sender": "robot"})
    assert bad.status_code == 400


def test_upload_rejects_bad_base64(client):
    user_id = sign_up(client)

    response = call(client, "upload-file", {
        "user_id": user_id, "file_name": "a.png", "content_type": "image/png", "content_base64": "not base64!!",
    })

    assert response.status_code == 400


def test_assistant_response(client, fake_openai):
    user_id = sign_up(client)

    response = call(client, "assistant-response", {"prompt": "Hi", "userId": user_id})

    assert response.status_code == 200
    assert response.json() == {"generatedText": "Done!", "threadId": "thread_new", "runId": "run_1"}


def test_assistant_timeout_maps_to_504(client, fake_openai):
    fake_openai.runs.statuses = [make_run("run_1", "in_progress")]
    user_id = sign_up(client)

    response = call(client, "assistant-response", {"prompt": "Hi", "userId": user_id, "threadId": "thread_1"})

    assert response.status_code == 504
    assert response.json()["code"] == "run_timeout"


def test_generate_response(client):
    user_id = sign_up(client)

    response = call(client, "generate-response", {"prompt": "Hello", "userId": user_id})

    assert response.json()["generatedText"] == "Hello from the model"


def test_unconfigured_provider_is_an_external_error(client, services):
    services.openai = None
    user_id = sign_up(client)

    response = call(client, "generate-response", {"prompt": "Hello", "userId": user_id})

    assert response.status_code == 502
    assert response.json() == {"error": "OpenAI is not configured", "code": "external_api_error"}


def test_process_image(client):
    response = call(client, "process-image", {"imageUrl": "http://files/receipt.png"})

    assert response.json() == {"text": "TOTAL 12.50", "success": True}


def test_pdf_pipeline(client):
    user_id = sign_up(client)
    upload = call(client, "upload-file", {
        "user_id": user_id,
        "file_name": "statement.pdf",
        "content_type": "application/pdf",
        "content_base64": base64.b64encode(make_pdf(3)).decode(),
    }).json()

    document_id = call(client, "create-document", {
        "user_id": user_id, "file_url": upload["url"], "original_name": "statement.pdf",
    }).json()["document_id"]

    queued = call(client, "process-pdf", {"documentId": document_id})
    assert queued.json()["success"] is True

    # Background tasks finish before TestClient returns
    status = call(client, "document-status", {"document_id": document_id}).json()
    assert status == {"document_id": document_id, "status": "completed", "page_count": 3}

    again = call(client, "process-pdf", {"documentId": document_id}).json()
    assert again["status"] == "completed"
    assert call(client, "document-status", {"document_id": document_id}).json()["page_count"] == 3


def test_corrupt_pdf_reports_error_status(client):
    user_id = sign_up(client)
    upload = call(client, "upload-file", {
        "user_id": user_id,
        "file_name": "broken.pdf",
        "content_type": "application/pdf",
        "content_base64": base64.b64encode(b"%PDF-garbage").decode(),
    }).json()
    document_id = call(client, "create-document", {"user_id": user_id, "file_url": upload["url"]}).json()["document_id"]

    assert call(client, "process-pdf", {"documentId": document_id}).status_code == 200
    assert call(client, "document-status", {"document_id": document_id}).json()["status"] == "error"


def test_bank_linking_and_webhook(client, session_factory, fake_plaid, fake_sender):
    user_id = sign_up(client)
    assert call(client, "create-link-token", {"user_id": user_id}).json()["link_token"] == f"link-sandbox-{user_id}"

    linked = call(client, "exchange-public-token", {
        "user_id": user_id, "public_token": "public-sandbox-1", "metadata": {"institution": {"name": "Chase"}},
    }).json()
    assert linked == {"success": True, "item_id": "item-1", "institution_name": "Chase"}

    connections = call(client, "list-connections", {"user_id": user_id}).json()["connections"]
    assert [c["item_id"] for c in connections] == ["item-1"]

    call(client, "register-device-token", {"user_id": user_id, "token": "device-1"})
    fake_plaid.delta = SyncDelta(
        added=[{"transaction_id": "p1", "amount": 20, "name": "Uber", "date": "2024-05-03"}],
        next_cursor="cursor-1",
    )

    simulated = call(client, "simulate-plaid-webhook", {"item_id": "item-1"}).json()
    assert simulated["result"]["synced"]["added"] == 1
    assert simulated["result"]["notified"] == 1

    # Same delivery again: reconciled by transaction id, nothing duplicated
    call(client, "plaid-webhook", {
        "webhook_type": "TRANSACTIONS", "webhook_code": "SYNC_UPDATES_AVAILABLE", "item_id": "item-1",
    })

    db = session_factory()
    try:
        assert db.query(Transaction).filter(Transaction.plaid_transaction_id == "p1").count() == 1
        assert db.query(PlaidConnection).one().cursor == "cursor-1"
    finally:
        db.close()
    assert len(fake_sender.messages) == 1


def test_unknown_item_webhook_is_data_integrity_error(client):
    response = call(client, "simulate-plaid-webhook", {"item_id": "nope"})

    assert response.status_code == 400
    assert response.json()["code"] == "data_integrity"


def test_malformed_webhook_is_rejected(client):
    response = call(client, "plaid-webhook", {"webhook_code": "SYNC_UPDATES_AVAILABLE"})

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_request"


def test_send_push_and_transaction_webhook(client, fake_sender):
    user_id = sign_up(client)
    call(client, "register-device-token", {"user_id": user_id, "token": "device-1"})

    sent = call(client, "send-push-notification", {"tokens": ["device-1"], "title": "Hi", "body": "There"}).json()
    assert sent["success_count"] == 1

    hook = call(client, "transaction-webhook", {
        "type": "INSERT", "table": "transactions",
        "record": {"id": 3, "user_id": user_id, "amount": -50, "type": "expense"},
    })
    assert hook.json() == {"success": True}
    assert fake_sender.messages[-1].notification.body == "Expense: $50.00"

    skipped = call(client, "transaction-webhook", {"type": "UPDATE", "table": "transactions", "record": {}})
    assert skipped.json()["skipped"] is True


def test_health_and_service_worker(client):
    assert client.get("/health").json() == {"status": "ok"}

    sw = client.get("/sw.js")
    assert sw.status_code == 200
    assert "notificationclick" in sw.text
