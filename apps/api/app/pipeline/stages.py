from __future__ import annotations

from dataclasses import dataclass


BASE_STAGE = "base"
MAPPED_STAGE = "lead_mapeado"
CONTACTING_STAGE = "tentando_contato"
DISQUALIFIED_STAGE = "desqualificado"


@dataclass(frozen=True)
class PipelineStage:
    slug: str
    name: str
    order: int
    configurable: bool
    hidden: bool = False


@dataclass(frozen=True)
class BuiltinField:
    id: str
    label: str
    attribute: str


STAGES: tuple[PipelineStage, ...] = (
    PipelineStage(slug=BASE_STAGE, name="Base", order=0, configurable=False),
    PipelineStage(slug=MAPPED_STAGE, name="Lead Mapeado", order=1, configurable=True),
    PipelineStage(slug=CONTACTING_STAGE, name="Tentando Contato", order=2, configurable=True),
    PipelineStage(slug="conexao_iniciada", name="Conexão Iniciada", order=3, configurable=True),
    PipelineStage(slug=DISQUALIFIED_STAGE, name="Desqualificado", order=4, configurable=False),
    PipelineStage(slug="qualificado", name="Qualificado", order=5, configurable=True),
    PipelineStage(slug="reuniao_agendada", name="Reunião Agendada", order=6, configurable=True),
)
STAGES_BY_SLUG = {stage.slug: stage for stage in STAGES}
CONFIGURABLE_STAGES = frozenset(stage.slug for stage in STAGES if stage.configurable)

BUILTIN_FIELDS: dict[str, BuiltinField] = {
    "nome": BuiltinField(id="nome", label="Nome", attribute="name"),
    "email": BuiltinField(id="email", label="Email", attribute="email"),
    "telefone": BuiltinField(id="telefone", label="Telefone", attribute="phone"),
    "cargo": BuiltinField(id="cargo", label="Cargo", attribute="position"),
    "empresa": BuiltinField(id="empresa", label="Empresa", attribute="company"),
}

# Retired default rule, applied only when legacy stage rules are switched on.
LEGACY_REQUIRED_FIELDS = ("nome", "telefone", "cargo")


def is_known_stage(slug: str | None) -> bool:
    return slug in STAGES_BY_SLUG


def is_configurable_stage(slug: str | None) -> bool:
    return slug in CONFIGURABLE_STAGES


def stage_name(slug: str) -> str:
    stage = STAGES_BY_SLUG.get(slug)
    return stage.name if stage is not None else slug
