from __future__ import annotations

import json
import re
from dataclasses import dataclass, field

from app.outreach.schemas import SuggestionRead


CHANNEL_LABELS = {"whatsapp": "WhatsApp", "email": "Email"}
TONE_LABELS = {"formal": "formal", "informal": "informal", "neutral": "neutro"}
DEFAULT_INSTRUCTIONS = "Seja profissional e direto ao ponto."
NOT_INFORMED = "Não informado"

_FORMALITY_LEVELS = {
    1: "muito informal e descontraído, como se falasse com um amigo próximo",
    2: "informal e amigável, mas respeitoso",
    3: "neutro, equilibrando profissionalismo com cordialidade",
    4: "formal e profissional, adequado para ambiente corporativo",
    5: "muito formal e cerimoniosa, para contextos executivos de alto nível",
}

_CHANNEL_INSTRUCTIONS = {
    "whatsapp": "\n".join(
        [
            "- Mensagem curta e direta (máximo 3-4 parágrafos curtos)",
            "- Pode usar emojis com moderação (1-2 no máximo)",
            "- Linguagem conversacional",
            "- Não use assunto/título",
            "- Termine com uma pergunta ou call-to-action claro",
            '- Não use saudações muito formais como "Prezado(a)"',
        ]
    ),
    "email": "\n".join(
        [
            "- Estrutura de email profissional (saudação, corpo, fechamento, assinatura)",
            "- NÃO use emojis",
            "- Use parágrafos bem estruturados",
            '- Inclua linha de assunto sugerida no início (formato: "Assunto: ...")',
            "- Saudação apropriada ao tom",
            '- Fechamento cordial com nome do remetente (use "[Seu Nome]" como placeholder)',
            "- Seja mais detalhado que WhatsApp, mas ainda conciso",
        ]
    ),
}

_POSITION_LINE = re.compile(r"\n[ \t]*\[Seu Cargo\][ \t]*(?=\n|$)")


class SuggestionParseError(ValueError):
    pass


@dataclass
class CampaignBrief:
    name: str
    context: str
    voice_tone: str
    ai_instructions: str | None = None
    formality_level: int | None = None


@dataclass
class LeadBrief:
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    position: str | None = None
    company: str | None = None
    segment: str | None = None
    revenue: str | None = None
    notes: str | None = None
    custom_fields: dict[str, str] = field(default_factory=dict)


@dataclass
class Sender:
    name: str
    company: str
    position: str | None = None


def formality_description(channel: str, formality_level: int | None) -> str:
    if formality_level is None:
        if channel == "whatsapp":
            return "informal e amigável, como uma conversa casual"
        return "profissional e formal, adequado para comunicação empresarial"
    return _FORMALITY_LEVELS.get(formality_level, "profissional e cordial")


def _lead_section(lead: LeadBrief) -> str:
    lines = [
        "Dados do Lead:",
        f"- Nome: {lead.name or NOT_INFORMED}",
        f"- Cargo: {lead.position or NOT_INFORMED}",
        f"- Empresa: {lead.company or NOT_INFORMED}",
        f"- Email: {lead.email or NOT_INFORMED}",
        f"- Telefone: {lead.phone or NOT_INFORMED}",
    ]
    if lead.segment:
        lines.append(f"- Segmento: {lead.segment}")
    if lead.revenue:
        lines.append(f"- Faturamento: {lead.revenue}")
    if lead.notes:
        lines.append(f"- Observações: {lead.notes}")
    custom = [(name, value) for name, value in lead.custom_fields.items() if value]
    if custom:
        lines.append("")
        lines.append("Campos Personalizados:")
        lines.extend(f"- {name}: {value}" for name, value in custom)
    return "\n".join(lines)


def _sender_section(sender: Sender | None) -> str:
    if sender is None:
        return ""
    lines = ["DADOS DO REMETENTE:", f"- Nome: {sender.name}"]
    if sender.position:
        lines.append(f"- Cargo: {sender.position}")
    lines.append(f"- Empresa/Workspace: {sender.company}")
    return "\n".join(lines)


def build_prompt(
    campaign: CampaignBrief,
    lead: LeadBrief,
    channel: str,
    variations: int,
    sender: Sender | None = None,
) -> str:
    channel_name = CHANNEL_LABELS[channel]
    sender_section = _sender_section(sender)
    substitution = ""
    if sender is not None:
        substitution = f"7. Substituir [Seu Nome] por {sender.name}, [Nome da Sua Empresa] por {sender.company}"
        if sender.position:
            substitution += f", [Seu Cargo] por {sender.position}"

    parts = [
        f"Você é um especialista em prospecção de vendas (SDR) escrevendo mensagens para {channel_name}.",
        "",
        "CONTEXTO DA CAMPANHA:",
        campaign.context,
        "",
        "INSTRUÇÕES DE ESTILO DO USUÁRIO:",
        campaign.ai_instructions or DEFAULT_INSTRUCTIONS,
        "",
        f"TOM DE VOZ DA CAMPANHA: {TONE_LABELS.get(campaign.voice_tone, campaign.voice_tone)}",
        "",
        f"NÍVEL DE FORMALIDADE: {formality_description(channel, campaign.formality_level)}",
        "",
        _lead_section(lead),
        "",
    ]
    if sender_section:
        parts.extend([sender_section, ""])
    parts.extend(
        [
            f"INSTRUÇÕES ESPECÍFICAS PARA {channel_name.upper()}:",
            _CHANNEL_INSTRUCTIONS[channel],
            "",
            "IMPORTANTE PARA EMAIL:",
            '- NÃO inclua "Assunto:" no corpo da mensagem',
            '- Coloque o assunto APENAS na primeira linha, no formato: "Assunto: [título do assunto]"',
            "- Use os dados do remetente para preencher [Seu Nome], [Seu Cargo], [Nome da Sua Empresa] com os valores reais",
            "- Se não houver cargo do remetente, use apenas o nome e empresa",
            "",
            "TAREFA:",
            f"Gere exatamente {variations} variações de mensagens personalizadas para {channel_name}.",
            "",
            "Cada mensagem deve:",
            "1. Ser personalizada usando os dados do lead (nome, cargo, empresa, etc.)",
            "2. Seguir o contexto e objetivo da campanha",
            "3. Respeitar o tom de voz e nível de formalidade especificados",
            "4. Seguir as instruções específicas do canal",
            "5. Ter um call-to-action claro",
            "6. Ser única e diferente das outras variações",
        ]
    )
    if substitution:
        parts.append(substitution)
    parts.extend(
        [
            "",
            "FORMATO DE RESPOSTA (JSON estrito):",
            "Responda APENAS com um array JSON válido, sem markdown, sem explicações:",
            "[",
            f'  {{"id": "1", "type": "{channel_name}", "message": "mensagem completa aqui"}},',
            f'  {{"id": "2", "type": "{channel_name}", "message": "outra variação aqui"}}',
            "]",
        ]
    )
    return "\n".join(parts).strip()


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def replace_sender_placeholders(message: str, sender: Sender | None) -> str:
    if sender is None:
        return message
    result = message.replace("[Seu Nome]", sender.name).replace("[Nome da Sua Empresa]", sender.company)
    if sender.position:
        return result.replace("[Seu Cargo]", sender.position)
    result = _POSITION_LINE.sub("", result)
    return result.replace("[Seu Cargo]", "")


def parse_suggestions(text: str, channel: str, sender: Sender | None = None) -> list[SuggestionRead]:
    try:
        payload = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as exc:
        raise SuggestionParseError(f"generation response is not valid JSON: {exc}") from exc
    if not isinstance(payload, list):
        raise SuggestionParseError("generation response must be a JSON array")

    suggestions: list[SuggestionRead] = []
    for item in payload:
        if not isinstance(item, dict) or not isinstance(item.get("message"), str):
            raise SuggestionParseError("each suggestion needs a text message")
        suggestions.append(
            SuggestionRead(
                id=f"{channel}-{len(suggestions) + 1}",
                type=CHANNEL_LABELS[channel],
                message=replace_sender_placeholders(item["message"], sender),
            )
        )
    return suggestions
