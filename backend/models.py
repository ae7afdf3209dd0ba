"""
Database models for the unified market risk service
SQLAlchemy ORM with PostgreSQL
"""

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Float,
    DateTime,
    Boolean,
    JSON,
    Text,
    ForeignKey,
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from datetime import datetime
import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv(
    "DATABASE_URL", "postgresql://postgres@127.0.0.1:5432/market_risk"
)

# SQLite (local dev / tests) needs cross-thread access for FastAPI's threadpool
_connect_args = (
    {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
)

engine = create_engine(
    DATABASE_URL, pool_pre_ping=True, echo=False, connect_args=_connect_args
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class DecisionEngineRun(Base):
    """One automated slate-selection run, later annotated with outcomes"""

    __tablename__ = "decision_engine_runs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    config_version = Column(Integer, nullable=False, index=True)
    sport = Column(String, index=True)
    user_id = Column(String, index=True)

    # Inputs
    bankroll = Column(Float)
    candidate_count = Column(Integer, default=0)
    selected_count = Column(Integer, default=0)
    selected_slate = Column(JSON)   # [{candidate_id, stake_usd, expected_value, ...}]
    alternatives = Column(JSON)     # runner-up slates considered
    constraints = Column(JSON)      # {max_positions, max_exposure, ...}

    # Filled by validate_decision_run once events resolve
    validated = Column(Boolean, default=False, nullable=False, index=True)
    validated_at = Column(DateTime)
    actual_ats = Column(Float)          # percent, 0-100
    actual_net_units = Column(Float)
    max_drawdown = Column(Float)        # units, peak-to-trough

    outcomes = relationship(
        "DecisionEngineOutcome",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="DecisionEngineOutcome.position_index",
    )

    created_at = Column(DateTime, default=datetime.utcnow)


class DecisionEngineOutcome(Base):
    """Resolved result of one selected position within a run"""

    __tablename__ = "decision_engine_outcomes"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(
        Integer, ForeignKey("decision_engine_runs.id"), nullable=False, index=True
    )
    position_index = Column(Integer, nullable=False)
    candidate_id = Column(String)
    stake_usd = Column(Float)
    expected_value = Column(Float)
    prediction_id = Column(String)
    ats_result = Column(Integer)   # 1 win, -1 loss, 0 push
    net_units = Column(Float)

    run = relationship("DecisionEngineRun", back_populates="outcomes")


class JobExecution(Base):
    """Outcome and duration of an externally scheduled pipeline job"""

    __tablename__ = "job_executions"

    id = Column(Integer, primary_key=True, index=True)
    job_name = Column(String, nullable=False, index=True)
    status = Column(String(20), nullable=False)   # success | partial | failed
    started_at = Column(DateTime, nullable=False, index=True)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer)
    error = Column(Text)
    # "metadata" is reserved on declarative classes
    job_metadata = Column("metadata", JSON)


class ModelConfig(Base):
    """Keyed JSON configuration (e.g. ``ats_pipeline_config``)"""

    __tablename__ = "model_configs"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String, unique=True, nullable=False, index=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Create all tables
def init_db():
    """Initialize database tables"""
    Base.metadata.create_all(bind=engine)
    print("✅ Database tables created")


if __name__ == "__main__":
    init_db()
