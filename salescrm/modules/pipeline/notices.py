"""
User-facing notices (toast messages) for board events and errors.

Texts are the clinic front-end's pt-BR messages. A message sent by the clinic
API always wins over the generic failure text.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from ...domain.pipeline.events import (
    LabelCreated,
    MutationReverted,
    NoteAdded,
    OpportunityCreated,
    OpportunityDeleted,
    OpportunityMoved,
    OpportunityUpdated,
    PipelineEvent,
    StageCreated,
    StageDeleted,
    StageRenamed,
)
from ...errors import PipelineError, PreconditionError, ValidationError

NoticeLevel = Literal["success", "error", "warning"]


@dataclass(frozen=True, slots=True)
class Notice:
    level: NoticeLevel
    text: str


_SUCCESS: dict[type, str] = {
    StageCreated: "Estágio criado com sucesso!",
    StageRenamed: "Estágio atualizado com sucesso!",
    StageDeleted: "Estágio removido com sucesso!",
    OpportunityCreated: "Oportunidade criada com sucesso!",
    OpportunityMoved: "Oportunidade movida com sucesso!",
    OpportunityUpdated: "Oportunidade atualizada com sucesso!",
    OpportunityDeleted: "Oportunidade excluída com sucesso!",
    NoteAdded: "Comentário adicionado com sucesso!",
    LabelCreated: "Rótulo criado com sucesso!",
}

FAILURE_TEXT: dict[str, str] = {
    "create_stage": "Erro ao criar estágio!",
    "rename_stage": "Erro ao atualizar estágio!",
    "delete_stage": "Erro ao excluir estágio!",
    "create_opportunity": "Erro ao criar oportunidade!",
    "move_opportunity": "Erro ao mover oportunidade!",
    "update_opportunity": "Erro ao atualizar oportunidade!",
    "delete_opportunity": "Erro ao excluir oportunidade!",
    "add_note": "Erro ao adicionar comentário!",
    "create_label": "Erro ao criar rótulo!",
    "fetch_stages": "Erro ao buscar estágios de venda",
    "fetch_opportunities": "Erro ao buscar oportunidades",
    "fetch_labels": "Erro ao buscar rótulos",
    "fetch_opportunity": "Erro ao carregar detalhes da oportunidade",
    "fetch_notes": "Erro ao carregar detalhes da oportunidade",
}

_VALIDATION_TEXT: dict[str | None, str] = {
    "name": "Informe o nome!",
    "title": "Este campo é obrigatório",
    "content": "Este campo é obrigatório",
    "description": "A descrição excede o tamanho máximo permitido",
    "color": "Selecione uma cor válida!",
    "order_position": "Posição já utilizada por outro estágio!",
}

NO_STAGES_TEXT = "Não há estágios cadastrados. Crie um estágio primeiro!"


def notice_for_event(evt: PipelineEvent) -> Notice | None:
    if isinstance(evt, MutationReverted):
        err = evt.error
        if isinstance(err, PipelineError):
            return notice_for_error(err, operation=evt.operation)
        return Notice(level="error", text=FAILURE_TEXT.get(evt.operation, "Erro inesperado!"))
    if isinstance(evt, StageDeleted) and evt.orphaned_ids:
        return Notice(
            level="warning",
            text=f"Estágio removido. {len(evt.orphaned_ids)} oportunidade(s) ficaram sem estágio.",
        )
    text = _SUCCESS.get(type(evt))
    return Notice(level="success", text=text) if text else None


def notice_for_error(err: PipelineError, *, operation: str | None = None) -> Notice:
    op = operation or err.operation or ""
    if isinstance(err, PreconditionError) and err.message == "no stages":
        return Notice(level="error", text=NO_STAGES_TEXT)
    if isinstance(err, ValidationError):
        if err.field == "name" and op.endswith("_stage"):
            return Notice(level="error", text="Informe o nome do estágio!")
        return Notice(level="error", text=_VALIDATION_TEXT.get(err.field, "Este campo é obrigatório"))
    if err.remote_message:
        return Notice(level="error", text=err.remote_message)
    return Notice(level="error", text=FAILURE_TEXT.get(op, "Erro inesperado!"))
