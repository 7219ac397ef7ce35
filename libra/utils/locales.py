"""Locale codes used for per-language fields."""

from __future__ import annotations

TOP_LOCALES: tuple[str, ...] = (
    "zh_cn",
    "es_es",
    "es_la",
    "en_us",
    "hi_in",
    "bn_bd",
    "pt_pt",
    "pt_br",
    "ru_ru",
    "ja_jp",
    "pa_pk",
    "mr_in",
    "te_in",
    "tr_tr",
    "ko_kr",
    "fr_fr",
    "de_de",
    "vi_vn",
    "ta_in",
    "jv_id",
    "it_it",
    "ar_eg",
    "gu_in",
    "fa_ir",
    "bh_in",
    "ha_ng",
    "kn_in",
    "id_id",
    "th_th",
    "uk_ua",
)

_LANGUAGE_TO_LOCALE = {
    "zh": "zh_cn",
    "zh_hk": "zh_cn",
    "es": "es_es",
    "es_la": "es_la",
    "en": "en_us",
    "hi": "hi_in",
    "bn": "bn_bd",
    "pt": "pt_pt",
    "pt_br": "pt_br",
    "ru": "ru_ru",
    "ja": "ja_jp",
    "pa": "pa_pk",
    "mr": "mr_in",
    "te": "te_in",
    "tr": "tr_tr",
    "ko": "ko_kr",
    "fr": "fr_fr",
    "de": "de_de",
    "vi": "vi_vn",
    "ta": "ta_in",
    "jv": "jv_id",
    "it": "it_it",
    "ar": "ar_eg",
    "gu": "gu_in",
    "fa": "fa_ir",
    "bh": "bh_in",
    "ha": "ha_ng",
    "kn": "kn_in",
    "id": "id_id",
    "wu": "zh_cn",
    "mn": "zh_cn",
    "hak": "zh_cn",
    "jin": "zh_cn",
    "th": "th_th",
    "uk": "uk_ua",
}


def to_locale(language_code: str | None) -> str | None:
    """Map a provider language code (``en``, ``pt-br``) to a ranked locale."""

    if not language_code:
        return None
    code = language_code.replace("-", "_").strip().lower()
    if code in TOP_LOCALES:
        return code
    return _LANGUAGE_TO_LOCALE.get(code)


__all__ = ["TOP_LOCALES", "to_locale"]
