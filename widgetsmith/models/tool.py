# widgetsmith/models/tool.py
import uuid

from sqlalchemy import Column, DateTime, Index, Integer, JSON, String, Text
from sqlalchemy.sql import func

from widgetsmith.models.base import Base


class CustomTool(Base):
    __tablename__ = "custom_tools"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=False)  # Doubles as the generation prompt
    status = Column(String, nullable=False, default="generating", index=True)
    generation = Column(Integer, nullable=False, default=1)

    # Ordered name -> default value; the default's type drives coercion
    parameters_schema = Column(JSON, nullable=False, default=dict)
    current_parameters = Column(JSON, nullable=False, default=dict)
    generated_code = Column(Text, nullable=True)  # Owner-private, never serialized to clients

    last_result = Column(JSON, nullable=True)
    last_result_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    refresh_interval = Column(Integer, nullable=False, default=0)  # ms, 0 = no server refresh

    position = Column(Integer, nullable=False, default=0)
    execution_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_custom_tools_owner_status", "owner_id", "status"),
    )

    def __repr__(self):
        return f"<CustomTool(id='{self.id}', name='{self.name}', status='{self.status}')>"
