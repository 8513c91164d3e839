from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base
from app.core.errors import ValidationFailedError
from app.crm.models import CRMCustomField, CRMLead
from app.pipeline.models import StageConfig
from app.pipeline.service import find_eligible_for_promotion, is_blank, stage_validator
from app.pipeline.stages import STAGES, is_configurable_stage, stage_name
from app.workspaces.models import Workspace


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def workspace(db_session: Session) -> Workspace:
    row = Workspace(id=uuid.uuid4(), name="Acme Vendas", slug="acme-vendas", owner_id="user-owner")
    db_session.add(row)
    db_session.commit()
    return row


def _lead(workspace: Workspace, **values) -> CRMLead:
    values.setdefault("stage", "base")
    values.setdefault("custom_fields", {})
    return CRMLead(id=uuid.uuid4(), workspace_id=workspace.id, created_by="user-owner", **values)


def _configure(db_session: Session, workspace: Workspace, stage: str, required_fields: list[str]) -> None:
    db_session.add(StageConfig(workspace_id=workspace.id, stage=stage, required_fields=required_fields))
    db_session.commit()


def test_stage_catalog_order_and_configurability() -> None:
    assert [stage.slug for stage in STAGES] == [
        "base",
        "lead_mapeado",
        "tentando_contato",
        "conexao_iniciada",
        "desqualificado",
        "qualificado",
        "reuniao_agendada",
    ]
    assert not is_configurable_stage("base")
    assert not is_configurable_stage("desqualificado")
    assert is_configurable_stage("qualificado")
    assert stage_name("reuniao_agendada") == "Reunião Agendada"


def test_missing_phone_blocks_qualified(db_session: Session, workspace: Workspace) -> None:
    _configure(db_session, workspace, "qualificado", ["nome", "telefone", "cargo"])
    lead = _lead(workspace, name="Ana", phone="", position="CEO")

    errors = stage_validator.validate(db_session, lead, "qualificado")

    assert [error.model_dump() for error in errors] == [{"field": "telefone", "message": "Telefone é obrigatório"}]
    with pytest.raises(ValidationFailedError) as raised:
        stage_validator.ensure_can_move(db_session, lead, "qualificado")
    assert raised.value.details == [{"field": "telefone", "message": "Telefone é obrigatório"}]


def test_unconfigured_stage_is_unrestricted(db_session: Session, workspace: Workspace) -> None:
    lead = _lead(workspace)
    assert stage_validator.validate(db_session, lead, "reuniao_agendada") == []


def test_any_stage_order_is_allowed_when_fields_are_present(db_session: Session, workspace: Workspace) -> None:
    _configure(db_session, workspace, "lead_mapeado", ["nome"])
    lead = _lead(workspace, name="Ana", stage="reuniao_agendada")
    assert stage_validator.validate(db_session, lead, "lead_mapeado") == []


def test_whitespace_custom_value_counts_as_missing(db_session: Session, workspace: Workspace) -> None:
    field = CRMCustomField(workspace_id=workspace.id, name="Orçamento", field_type="text", position=0)
    db_session.add(field)
    db_session.commit()
    _configure(db_session, workspace, "conexao_iniciada", [str(field.id), "email"])

    lead = _lead(workspace, email="ana@acme.com", custom_fields={str(field.id): "   "})
    errors = stage_validator.validate(db_session, lead, "conexao_iniciada")
    assert [error.model_dump() for error in errors] == [{"field": str(field.id), "message": "Orçamento é obrigatório"}]

    lead.custom_fields = {str(field.id): "R$ 10 mil"}
    assert stage_validator.validate(db_session, lead, "conexao_iniciada") == []


def test_unknown_target_stage_is_rejected(db_session: Session, workspace: Workspace) -> None:
    with pytest.raises(ValidationFailedError):
        stage_validator.validate(db_session, _lead(workspace), "ganho")


def test_legacy_rule_only_applies_when_enabled(
    db_session: Session,
    workspace: Workspace,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    lead = _lead(workspace, name="Ana")
    assert stage_validator.validate(db_session, lead, "tentando_contato") == []

    monkeypatch.setenv("LEGACY_STAGE_RULES_ENABLED", "true")
    get_settings.cache_clear()

    fields = [error.field for error in stage_validator.validate(db_session, lead, "tentando_contato")]
    assert fields == ["telefone", "cargo"]
    assert stage_validator.validate(db_session, lead, "desqualificado") == []


def test_promotion_eligibility() -> None:
    workspace = Workspace(id=uuid.uuid4(), name="W", slug="w", owner_id="u")
    carlos = _lead(workspace, name="Carlos", company="Acme", email="c@acme.com")
    by_position = _lead(workspace, name="Bia", position="CTO", phone="+55 11 99999-0000")
    no_contact = _lead(workspace, name="Davi", company="Acme")
    no_name = _lead(workspace, name="  ", company="Acme", email="x@acme.com")
    no_company = _lead(workspace, name="Eva", email="eva@example.com")
    already_mapped = _lead(workspace, name="Fabio", company="Acme", email="f@acme.com", stage="lead_mapeado")
    archived = _lead(
        workspace,
        name="Gil",
        company="Acme",
        email="g@acme.com",
        archived_at=datetime.now(timezone.utc),
    )

    eligible = find_eligible_for_promotion(
        [carlos, by_position, no_contact, no_name, no_company, already_mapped, archived]
    )

    assert eligible == [carlos, by_position]


def test_is_blank() -> None:
    assert is_blank(None)
    assert is_blank("  ")
    assert is_blank([])
    assert not is_blank(0)
    assert not is_blank("x")
