from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    Index,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    price = Column(Integer, nullable=False)  # rupiah
    stock = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    # a product delivers either an external link or a local file
    file_path = Column(String, nullable=True)
    download_link = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_number = Column(String, nullable=False, unique=True)

    # snapshot of the product at checkout time
    product_id = Column(String, nullable=False)
    product_name = Column(String, nullable=False)
    product_price = Column(Integer, nullable=False)

    unique_code = Column(Integer, nullable=False)
    total_amount = Column(Integer, nullable=False)

    customer_email = Column(String, nullable=True)
    customer_whatsapp = Column(String, nullable=True)
    customer_telegram = Column(String, nullable=True)

    # pending | paid
    status = Column(String, nullable=False, default="pending")
    payment_method = Column(String, nullable=False, default="qris")
    qris_string = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("ix_orders_status_total", "status", "total_amount"),
    )


class DownloadToken(Base):
    __tablename__ = "download_tokens"
    token = Column(String, primary_key=True)
    invoice_number = Column(String, nullable=False, index=True)
    product_id = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False)
    # observability only, never enforced
    is_used = Column(Boolean, nullable=False, default=False)
    download_count = Column(Integer, nullable=False, default=0)
    last_download_at = Column(Float, nullable=True)


class Setting(Base):
    __tablename__ = "settings"
    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(Float, nullable=False)


class ChatSession(Base):
    __tablename__ = "chat_sessions"
    chat_key = Column(String, primary_key=True)  # channel:chat_id
    state = Column(String, nullable=False, default="menu")
    data = Column(Text, nullable=False, default="{}")  # JSON
    last_activity = Column(Float, nullable=False)


async def create_tables(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
