import streamlit as st
import pandas as pd
import time

from chat_client import CALL_ERRORS, FunctionCallError, FunctionsClient, error_message
from config import configure_logging, load_settings
from dashboard import render_profit_loss

# --- Configuration ---
st.set_page_config(page_title="AI Bookkeeping Chat", layout="wide", page_icon="💬")
settings = load_settings()
configure_logging(settings.log_level)

STARTERS = ["Add expense", "Add income", "Invoice creation", "Report generation", "Tax insights"]
IMAGE_TYPES = ["png", "jpg", "jpeg", "webp", "gif"]
SIMULATE_COMMAND = "/simulate-webhook"

if "client" not in st.session_state:
    st.session_state.client = FunctionsClient(settings.functions_base_url)


def get_client() -> FunctionsClient:
    return st.session_state.client


# --- Authentication ---
def _start_session(result: dict):
    st.session_state["authenticated"] = True
    st.session_state["user_id"] = result["user_id"]
    st.session_state["username"] = result["username"]
    st.session_state["thread_id"] = None
    st.session_state["messages"] = get_client().chat_history(result["user_id"])
    # Resume the most recent assistant thread
    for message in reversed(st.session_state["messages"]):
        if message.get("thread_id"):
            st.session_state["thread_id"] = message["thread_id"]
            break


def check_login():
    """Sign in / sign up page. Returns True once a session exists."""
    if "authenticated" not in st.session_state:
        st.session_state["authenticated"] = False
        st.session_state["user_id"] = None
        st.session_state["messages"] = []
        st.session_state["thread_id"] = None

    if st.session_state.get("authenticated", False):
        return True

    st.title("💬 AI Bookkeeping")
    st.caption("Track income and expenses by chatting with your assistant.")

    sign_in_tab, sign_up_tab = st.tabs(["Sign in", "Create account"])

    with sign_in_tab:
        with st.form("sign_in"):
            username = st.text_input("Username")
            password = st.text_input("Password", type="password")
            submitted = st.form_submit_button("Sign in", use_container_width=True)
        if submitted:
            try:
                _start_session(get_client().sign_in(username, password))
                st.rerun()
            except CALL_ERRORS as e:
                st.error(error_message(e))

    with sign_up_tab:
        with st.form("sign_up"):
            first_name = st.text_input("First name")
            last_name = st.text_input("Last name")
            new_username = st.text_input("Username", key="sign_up_username")
            new_password = st.text_input("Password (min. 6 characters)", type="password", key="sign_up_password")
            created = st.form_submit_button("Create account", use_container_width=True)
        if created:
            try:
                _start_session(get_client().sign_up(new_username, new_password, first_name or None, last_name or None))
                st.rerun()
            except CALL_ERRORS as e:
                st.error(error_message(e))

    return False


if not check_login():
    st.stop()

user_id = st.session_state["user_id"]


# --- Chat ---
def _attach(upload) -> dict:
    """Upload the attached file and return the assistant arguments for it."""
    client = get_client()
    data = upload.getvalue()
    stored = client.upload_file(user_id, upload.name, data, upload.type or "application/octet-stream")
    file_ref = {"url": stored["url"], "type": stored["type"], "name": stored["name"]}

    if upload.name.lower().endswith(".pdf"):
        with st.spinner("Reading PDF pages..."):
            document_id = client.create_document(user_id, stored["url"], upload.name)
            client.process_pdf(document_id)
            client.wait_for_document(document_id)
        return {"file": file_ref, "document_id": document_id}

    return {"file": file_ref, "file_url": stored["url"], "file_type": stored["type"]}


def simulate_webhook(content: str):
    parts = content.split()
    if len(parts) < 2:
        st.error(f"Please provide an Item ID. Usage: {SIMULATE_COMMAND} [item_id]")
        return
    try:
        result = get_client().simulate_plaid_webhook(parts[1])
        st.toast(result.get("message", "Webhook simulation completed"))
    except CALL_ERRORS as e:
        st.error(f"Webhook simulation failed: {error_message(e)}")


def send_message(content: str, upload=None):
    client = get_client()
    content = content.strip()
    if content.startswith(SIMULATE_COMMAND):
        simulate_webhook(content)
        return False
    if not content and upload is None:
        return False

    try:
        attachment = _attach(upload) if upload is not None else {}
    except CALL_ERRORS as e:
        st.error(f"Could not process attachment: {error_message(e)}")
        return False

    prompt = content or f"Please review the attached file {upload.name}."
    try:
        user_message = client.save_message(
            user_id, prompt, "user", st.session_state.get("thread_id"), attachment.get("file")
        )
    except CALL_ERRORS as e:
        st.error(f"Could not save your message: {error_message(e)}")
        return False
    st.session_state.messages.append(user_message)

    try:
        with st.spinner("Thinking..."):
            reply = client.ask_assistant(
                user_id,
                prompt,
                thread_id=st.session_state.get("thread_id"),
                file_url=attachment.get("file_url"),
                file_type=attachment.get("file_type"),
                document_id=attachment.get("document_id"),
            )
    except CALL_ERRORS as e:
        if isinstance(e, FunctionCallError) and e.code == "run_timeout":
            st.error("The assistant took too long to answer. Please try again.")
        else:
            st.error(f"Failed to get response: {error_message(e)}")
        return False

    st.session_state["thread_id"] = reply.get("threadId") or st.session_state.get("thread_id")
    try:
        assistant_message = client.save_message(user_id, reply["generatedText"], "assistant", st.session_state["thread_id"])
    except CALL_ERRORS as e:
        # Still show the reply for this session
        st.toast(f"Reply was not saved to history: {error_message(e)}")
        assistant_message = {"sender": "assistant", "content": reply["generatedText"], "thread_id": st.session_state["thread_id"]}
    st.session_state.messages.append(assistant_message)
    return True


def render_message(message: dict):
    with st.chat_message(message["sender"]):
        st.markdown(message["content"])
        file = message.get("file")
        if file:
            if (file.get("type") or "").startswith("image/"):
                st.image(file["url"], width=240)
            else:
                st.markdown(f"📎 [{file.get('name') or 'Attachment'}]({file['url']})")


# Sidebar
with st.sidebar:
    st.header(f"👋 {st.session_state.get('username', '')}")

    st.subheader("🏦 Bank Sync (Plaid)")
    st.caption("Link a bank once; new transactions arrive through webhooks or a manual sync.")

    try:
        connections = get_client().list_connections(user_id)
    except CALL_ERRORS as e:
        connections = []
        st.error(f"Could not load connections: {error_message(e)}")

    if connections:
        for conn in connections:
            last_sync = pd.to_datetime(conn["last_synced_at"]).strftime("%b %d, %Y %I:%M %p") if conn["last_synced_at"] else "Never"
            col_a, col_b = st.columns([2, 1])
            col_a.markdown(f"**{conn['institution_name']}**  \nLast sync: {last_sync}")
            if col_b.button("Sync now", key=f"sync_{conn['item_id']}"):
                with st.spinner("Syncing transactions..."):
                    try:
                        synced = get_client().sync_connection(user_id, conn["item_id"])["synced"]
                        st.success(f"Pulled {synced['added']} new transactions.")
                        time.sleep(1)
                        st.rerun()
                    except CALL_ERRORS as e:
                        st.error(f"Plaid sync failed: {error_message(e)}")
            st.caption(f"Item ID: `{conn['item_id']}`")
    else:
        st.caption("No banks linked yet.")

    st.markdown("---")
    st.markdown("**Link a new bank**")
    if st.button("🔗 Create Plaid Link token"):
        try:
            link_token = get_client().create_link_token(user_id)
            st.info(f"Link Token Created: `{link_token}`")
            st.markdown("Complete Plaid Link with this token to obtain a **Public Token**, then enter it below.")
        except CALL_ERRORS as e:
            st.error(f"Plaid Error: {error_message(e)}")

    institution_label = st.text_input("Institution label", value="")
    public_token = st.text_input("Public Token (from Plaid Link)", key="plaid_public_token")
    if st.button("Exchange & Save Connection", use_container_width=True) and public_token:
        metadata = {"institution": {"name": institution_label}} if institution_label else None
        try:
            saved = get_client().exchange_public_token(user_id, public_token, metadata)
            st.success(f"Saved connection for {saved['institution_name']}. You can sync immediately.")
        except CALL_ERRORS as e:
            st.error(f"Exchange Error: {error_message(e)}")

    st.divider()
    st.subheader("🔔 Notifications")
    device_token = st.text_input("Device push token", key="device_token")
    if st.button("Register device", use_container_width=True) and device_token:
        try:
            get_client().register_device_token(user_id, device_token)
            st.success("Device registered for push notifications.")
        except CALL_ERRORS as e:
            st.error(f"Registration failed: {error_message(e)}")

    st.divider()
    if st.button("🚪 Logout", use_container_width=True):
        for key in ("authenticated", "user_id", "username", "messages", "thread_id"):
            st.session_state.pop(key, None)
        st.rerun()


st.title("💬 AI Bookkeeping Chat")
tab_chat, tab_txns, tab_dash = st.tabs(["💬 Chat", "💳 Transactions", "📊 Profit & Loss"])

with tab_chat:
    starter = None
    if not st.session_state.messages:
        st.subheader("Conversation starters")
        cols = st.columns(len(STARTERS))
        for col, text in zip(cols, STARTERS):
            if col.button(text, use_container_width=True):
                starter = text

    for message in st.session_state.messages:
        render_message(message)

    upload = st.file_uploader(
        "Attach an image or PDF",
        type=IMAGE_TYPES + ["pdf"],
        key=f"attachment_{len(st.session_state.messages)}",
    )
    prompt = st.chat_input("Ask about your books, or type /simulate-webhook <item_id>")

    # Errors stay on screen; only a completed exchange reruns
    if starter or prompt:
        if send_message(starter or prompt, None if starter else upload):
            st.rerun()

with tab_txns:
    st.header("💳 Transactions")
    col1, col2, col3 = st.columns(3)
    start = col1.date_input("From", value=None)
    end = col2.date_input("To", value=None)
    category = col3.text_input("Category")

    try:
        records = get_client().fetch_transactions(
            user_id,
            start.isoformat() if start else None,
            end.isoformat() if end else None,
            category or None,
        )
    except CALL_ERRORS as e:
        records = []
        st.error(f"Could not load transactions: {error_message(e)}")

    if not records:
        st.info("No transactions found.")
    for txn in records:
        col_a, col_b, col_c, col_d = st.columns([2, 3, 2, 1])
        col_a.write(txn["date"])
        col_b.write(f"**{txn['category']}** {txn.get('description') or ''}")
        col_c.write(f"${txn['amount']:,.2f} ({txn['type']})")
        if col_d.button("🗑️", key=f"delete_{txn['id']}"):
            try:
                get_client().delete_transaction(user_id, txn["id"])
                st.rerun()
            except CALL_ERRORS as e:
                st.error(error_message(e))
        if txn.get("image_url"):
            with st.expander("Receipt"):
                st.image(txn["image_url"], width=320)
        else:
            receipt = st.file_uploader("Attach receipt", type=IMAGE_TYPES, key=f"receipt_{txn['id']}")
            if receipt is not None:
                try:
                    get_client().attach_transaction_image(
                        user_id, receipt.name, receipt.getvalue(), receipt.type or "image/png", txn["id"]
                    )
                    st.success("Receipt attached.")
                    st.rerun()
                except CALL_ERRORS as e:
                    st.error(f"Upload failed: {error_message(e)}")

with tab_dash:
    st.header("📊 Profit & Loss")
    try:
        render_profit_loss(get_client().fetch_transactions(user_id))
    except CALL_ERRORS as e:
        st.error(f"Could not load dashboard: {error_message(e)}")
