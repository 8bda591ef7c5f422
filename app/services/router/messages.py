"""
Mensagens de "tente mais tarde" devolvidas quando o pool está esgotado.
"""

from typing import Optional

DEFAULT_RETRY_AFTER_SECONDS = 30

_EXHAUSTED_MESSAGES = {
    "ar": "جميع المفاتيح معطلة مؤقتاً - حاول مرة أخرى بعد قليل",
    "en": "All keys are temporarily unavailable - please try again shortly",
    "pt": "Todas as chaves estão temporariamente indisponíveis - tente novamente em instantes",
}


def exhausted_message(locale: Optional[str], fallback_locale: str = "ar") -> str:
    """Mensagem localizada; 'pt-BR' cai em 'pt', desconhecido cai no fallback."""
    for candidate in (locale, fallback_locale):
        if not candidate:
            continue
        lang = candidate.lower().replace("_", "-").split("-", 1)[0]
        if lang in _EXHAUSTED_MESSAGES:
            return _EXHAUSTED_MESSAGES[lang]
    return _EXHAUSTED_MESSAGES["ar"]
