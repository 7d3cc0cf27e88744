# errors.py
class ReconcileError(Exception):
    """Falha ao conciliar um webhook com usuário/assinatura."""


class PayloadError(ReconcileError):
    """Payload sem um campo obrigatório (email, transação...)."""


class UnknownSourceError(ReconcileError):
    """Origem de webhook sem provedor registrado."""
