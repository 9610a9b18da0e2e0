from __future__ import annotations

from contextvars import ContextVar

# Set by the reconciler for the lifetime of one optimistic mutation.
mutation_id_var: ContextVar[str | None] = ContextVar("mutation_id", default=None)


def get_mutation_id() -> str | None:
    return mutation_id_var.get()
