import uuid
from datetime import datetime
from sqlalchemy import create_engine, Column, Integer, String, Float, Date, DateTime, ForeignKey, Text
from sqlalchemy.orm import sessionmaker, declarative_base, relationship

# Database Setup
# Engines are built from settings; SQLite locally, Postgres when DATABASE_URL says so
Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def make_engine(url: str):
    return create_engine(url, connect_args={"check_same_thread": False} if url.startswith("sqlite") else {})


def make_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)

# --- Models ---

class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=_uuid)
    username = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False) # bcrypt hash, never plain text
    first_name = Column(String)
    last_name = Column(String)
    business_name = Column(String)
    business_description = Column(Text)
    industry = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Document(Base):
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id"), index=True)
    file_url = Column(String, nullable=False)
    original_name = Column(String, nullable=False)
    status = Column(String, default="pending") # pending -> processing -> completed | error
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    pages = relationship("DocumentPage", back_populates="document", order_by="DocumentPage.page_number")


class DocumentPage(Base):
    __tablename__ = "document_pages"

    id = Column(String(36), primary_key=True, default=_uuid)
    # Null for standalone receipt images attached to a transaction
    document_id = Column(String(36), ForeignKey("documents.id"), nullable=True, index=True)
    page_number = Column(Integer, nullable=False)
    image_url = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    document = relationship("Document", back_populates="pages")


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id"), index=True, nullable=False)
    amount = Column(Float, nullable=False) # Positive = Income, Negative = Expense
    category = Column(String)
    date = Column(Date)
    type = Column(String) # 'income' or 'expense'
    description = Column(String)
    document_page_id = Column(String(36), ForeignKey("document_pages.id"), nullable=True)

    # Metadata
    source = Column(String, default="manual")     # 'manual', 'assistant', 'plaid'
    plaid_transaction_id = Column(String, unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    document_page = relationship("DocumentPage")


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id"), index=True)
    thread_id = Column(String)
    content = Column(Text, nullable=False)
    sender = Column(String, nullable=False) # 'user' or 'assistant'
    file_url = Column(String)
    file_type = Column(String)
    file_name = Column(String)
    timestamp = Column(DateTime, default=datetime.utcnow)


class PlaidConnection(Base):
    __tablename__ = "plaid_connections"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id"), index=True, nullable=False)
    item_id = Column(String, unique=True, nullable=False)
    access_token = Column(String, nullable=False)
    institution_name = Column(String)
    cursor = Column(String) # /transactions/sync cursor
    last_synced_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class DeviceToken(Base):
    __tablename__ = "device_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id"), index=True, nullable=False)
    token = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

# --- Init DB ---
def init_db(bind):
    Base.metadata.create_all(bind=bind)
