# payments/__init__.py
from errors import UnknownSourceError

SOURCES = ("hotmart", "doppus")


def get_payment_provider(source: str):
    """
    Retorna a implementação do provedor conforme a origem do webhook.
    - hotmart: hottok no cabeçalho ou no corpo.
    - doppus: HMAC do corpo bruto.
    """
    source = (source or "").strip().lower()
    if source == "hotmart":
        from .hotmart import HotmartProvider
        return HotmartProvider()
    if source == "doppus":
        from .doppus import DoppusProvider
        return DoppusProvider()
    raise UnknownSourceError(f"Origem de webhook não suportada: {source or '?'}")
