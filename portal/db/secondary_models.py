from datetime import date, datetime
from typing import Optional

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

# Tables owned by the coaching backend; rows are matched to portal clients by user_code.
SecondaryBase = declarative_base()


class ChatUser(SecondaryBase):
    __tablename__ = "chat_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_code: Mapped[str] = mapped_column(String(16), unique=True, index=True, nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    phone_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    whatsapp_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    language: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    user_language: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    region: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    age: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    gender: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    weight_kg: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    height_cm: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    food_allergies: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    food_limitations: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Column name is capitalized in the coaching schema.
    Activity_level: Mapped[Optional[str]] = mapped_column("Activity_level", String(32), nullable=True)
    goal: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    client_preference: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    onboarding_done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    food_logs: Mapped[list["FoodLog"]] = relationship(
        "FoodLog", back_populates="chat_user", cascade="all, delete-orphan"
    )
    conversations: Mapped[list["ChatConversation"]] = relationship(
        "ChatConversation", back_populates="chat_user", cascade="all, delete-orphan"
    )


class MealPlanRecord(SecondaryBase):
    __tablename__ = "meal_plans_and_schemas"
    __table_args__ = (Index("ix_meal_plans_code_type_status", "user_code", "record_type", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_code: Mapped[Optional[str]] = mapped_column(String(16), nullable=True, index=True)
    dietitian_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    record_type: Mapped[str] = mapped_column(String(32), nullable=False, default="meal_plan")
    meal_plan_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")
    meal_plan_json: Mapped[Optional[str]] = mapped_column("meal_plan", Text, nullable=True)
    daily_total_calories: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class FoodLog(SecondaryBase):
    __tablename__ = "food_logs"
    __table_args__ = (Index("ix_food_logs_user_date", "user_id", "log_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("chat_users.id"), nullable=False, index=True)
    meal_label: Mapped[str] = mapped_column(String(64), nullable=False)
    food_items_json: Mapped[str] = mapped_column("food_items", Text, nullable=False, default="[]")
    image_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    total_calories: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    total_protein_g: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    total_carbs_g: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    total_fat_g: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    log_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    chat_user: Mapped[ChatUser] = relationship("ChatUser", back_populates="food_logs")


class ChatConversation(SecondaryBase):
    __tablename__ = "chat_conversations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("chat_users.id"), nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    chat_user: Mapped[ChatUser] = relationship("ChatUser", back_populates="conversations")
    messages: Mapped[list["ChatMessage"]] = relationship(
        "ChatMessage", back_populates="conversation", cascade="all, delete-orphan"
    )


class ChatMessage(SecondaryBase):
    __tablename__ = "chat_messages"
    __table_args__ = (Index("ix_chat_messages_conv_created", "conversation_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    conversation_id: Mapped[int] = mapped_column(ForeignKey("chat_conversations.id"), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="user")
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    topic: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    conversation: Mapped[ChatConversation] = relationship("ChatConversation", back_populates="messages")
