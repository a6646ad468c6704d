"""
Language code mappings and utilities.

Standards:
- ISO 639-1: 2-letter language codes (en, zh, es)
- BCP 47: Language + Region codes (en-US, zh-CN, pt-BR)

Jobs accept either a code from these tables or a free-form language name
("English", "Brazilian Portuguese"); describe_language() turns either into
the wording used in translation prompts.
"""

from typing import Optional, Tuple

# ISO 639-1 language codes (2-letter)
# Source: https://en.wikipedia.org/wiki/List_of_ISO_639-1_codes
ISO_639_1 = {
    'af': 'Afrikaans',
    'am': 'Amharic',
    'ar': 'Arabic',
    'ay': 'Aymara',
    'az': 'Azerbaijani',
    'bg': 'Bulgarian',
    'bn': 'Bengali',
    'bo': 'Tibetan',
    'bs': 'Bosnian',
    'ca': 'Catalan',
    'cs': 'Czech',
    'cy': 'Welsh',
    'da': 'Danish',
    'de': 'German',
    'el': 'Greek',
    'en': 'English',
    'es': 'Spanish',
    'et': 'Estonian',
    'eu': 'Basque',
    'fa': 'Persian',
    'ff': 'Fulah',
    'fi': 'Finnish',
    'fr': 'French',
    'ga': 'Irish',
    'gl': 'Galician',
    'gn': 'Guarani',
    'gu': 'Gujarati',
    'ha': 'Hausa',
    'he': 'Hebrew',
    'hi': 'Hindi',
    'hr': 'Croatian',
    'hu': 'Hungarian',
    'hy': 'Armenian',
    'id': 'Indonesian',
    'ig': 'Igbo',
    'is': 'Icelandic',
    'it': 'Italian',
    'ja': 'Japanese',
    'ka': 'Georgian',
    'kk': 'Kazakh',
    'km': 'Khmer',
    'kn': 'Kannada',
    'ko': 'Korean',
    'ky': 'Kyrgyz',
    'lb': 'Luxembourgish',
    'lo': 'Lao',
    'lt': 'Lithuanian',
    'lv': 'Latvian',
    'mg': 'Malagasy',
    'mi': 'Maori',
    'mk': 'Macedonian',
    'ml': 'Malayalam',
    'mn': 'Mongolian',
    'mr': 'Marathi',
    'ms': 'Malay',
    'mt': 'Maltese',
    'my': 'Burmese',
    'ne': 'Nepali',
    'nl': 'Dutch',
    'no': 'Norwegian',
    'om': 'Oromo',
    'or': 'Odia',
    'pa': 'Punjabi',
    'pl': 'Polish',
    'pt': 'Portuguese',
    'qu': 'Quechua',
    'rn': 'Kirundi',
    'ro': 'Romanian',
    'ru': 'Russian',
    'rw': 'Kinyarwanda',
    'si': 'Sinhala',
    'sk': 'Slovak',
    'sl': 'Slovenian',
    'so': 'Somali',
    'sq': 'Albanian',
    'sr': 'Serbian',
    'ss': 'Swati',
    'st': 'Southern Sotho',
    'sv': 'Swedish',
    'sw': 'Swahili',
    'ta': 'Tamil',
    'te': 'Telugu',
    'tg': 'Tajik',
    'th': 'Thai',
    'tk': 'Turkmen',
    'tn': 'Tswana',
    'tr': 'Turkish',
    'ts': 'Tsonga',
    'uk': 'Ukrainian',
    'ur': 'Urdu',
    'uz': 'Uzbek',
    've': 'Venda',
    'vi': 'Vietnamese',
    'xh': 'Xhosa',
    'yo': 'Yoruba',
    'zh': 'Chinese',
    'zu': 'Zulu',
}

# BCP 47 language-region codes (common variants)
BCP_47_VARIANTS = {
    'en-US': 'English (United States)',
    'en-GB': 'English (United Kingdom)',
    'en-AU': 'English (Australia)',
    'en-CA': 'English (Canada)',

    'zh-CN': 'Chinese (Simplified, China)',
    'zh-TW': 'Chinese (Traditional, Taiwan)',
    'zh-HK': 'Chinese (Traditional, Hong Kong)',
    'zh-SG': 'Chinese (Simplified, Singapore)',

    'es-ES': 'Spanish (Spain)',
    'es-MX': 'Spanish (Mexico)',
    'es-AR': 'Spanish (Argentina)',
    'es-CO': 'Spanish (Colombia)',

    'pt-BR': 'Portuguese (Brazil)',
    'pt-PT': 'Portuguese (Portugal)',

    'fr-FR': 'French (France)',
    'fr-CA': 'French (Canada)',
    'fr-BE': 'French (Belgium)',
    'fr-CH': 'French (Switzerland)',

    'de-DE': 'German (Germany)',
    'de-AT': 'German (Austria)',
    'de-CH': 'German (Switzerland)',

    'ar-SA': 'Arabic (Saudi Arabia)',
    'ar-AE': 'Arabic (United Arab Emirates)',
    'ar-EG': 'Arabic (Egypt)',
}

# Combined mapping
ALL_LANGUAGE_CODES = {**ISO_639_1, **BCP_47_VARIANTS}
_CODES_BY_LOWER = {code.lower(): code for code in ALL_LANGUAGE_CODES}


def normalize_language_code(code: str) -> Optional[str]:
    """
    Canonical spelling of a language code, or None if it is not a known code.

    Examples:
        >>> normalize_language_code('ZH-cn')
        'zh-CN'
        >>> normalize_language_code(' en ')
        'en'
        >>> normalize_language_code('English')
    """
    if not code:
        return None
    return _CODES_BY_LOWER.get(code.strip().replace('_', '-').lower())


def describe_language(value: str) -> Tuple[str, str]:
    """
    (name, code) pair for prompts. Free-form names are passed through as both.

    Examples:
        >>> describe_language('de')
        ('German', 'de')
        >>> describe_language('Klingon')
        ('Klingon', 'Klingon')
    """
    value = value.strip()
    canonical = normalize_language_code(value)
    if canonical:
        return ALL_LANGUAGE_CODES[canonical], canonical
    return value, value


def extract_base_language(code: str) -> str:
    """Extract base language from code (e.g. 'zh-CN' -> 'zh')."""
    return code.split('-')[0]


def languages_match(code1: str, code2: str, strict: bool = False) -> bool:
    """
    Check if two languages are the same, ignoring case and surrounding spaces.

    Examples:
        >>> languages_match('en', 'en-US')
        True
        >>> languages_match('en', 'en-US', strict=True)
        False
        >>> languages_match('English', ' english')
        True
    """
    first = code1.strip().lower()
    second = code2.strip().lower()
    if strict:
        return first == second
    return extract_base_language(first) == extract_base_language(second)
