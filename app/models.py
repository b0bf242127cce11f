from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    color: Mapped[str] = mapped_column(String(16))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(Integer, default=0, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class StudyFile(Base):
    __tablename__ = "study_files"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    project_id: Mapped[Optional[str]] = mapped_column(String(32), index=True, nullable=True)
    name: Mapped[str] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(String(16))
    available_cargos_json: Mapped[str] = mapped_column(Text, default="[]")
    selected_cargo_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    parsed_topics_json: Mapped[str] = mapped_column(Text, default="[]")
    exam_profile_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Attempt(Base):
    __tablename__ = "attempts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    project_id: Mapped[Optional[str]] = mapped_column(String(32), index=True, nullable=True)
    timestamp: Mapped[int] = mapped_column(BigInteger)
    questions_json: Mapped[str] = mapped_column(Text, default="[]")
    answers_json: Mapped[str] = mapped_column(Text, default="{}")
    score: Mapped[float] = mapped_column(Float)
    mode: Mapped[str] = mapped_column(String(16))


class Preference(Base):
    __tablename__ = "preferences"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
