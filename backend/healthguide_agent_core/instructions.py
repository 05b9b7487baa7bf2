from __future__ import annotations

from dataclasses import dataclass

DEFAULT_LANGUAGE = "en"


@dataclass(frozen=True)
class Language:
    code: str
    name: str
    flag: str


SUPPORTED_LANGUAGES: tuple[Language, ...] = (
    Language("en", "English", "🇺🇸"),
    Language("es", "Español", "🇪🇸"),
    Language("fr", "Français", "🇫🇷"),
    Language("de", "Deutsch", "🇩🇪"),
    Language("hi", "हिन्दी", "🇮🇳"),
    Language("zh", "中文", "🇨🇳"),
    Language("ja", "日本語", "🇯🇵"),
    Language("ar", "العربية", "🇸🇦"),
)
_BY_CODE = {language.code: language for language in SUPPORTED_LANGUAGES}


def resolve_language(code: str | None) -> Language:
    normalized = (code or DEFAULT_LANGUAGE).strip().lower()
    language = _BY_CODE.get(normalized)
    if not language:
        raise ValueError(f"Unsupported language: {code}")
    return language


def build_system_instruction(language: str) -> str:
    resolved = resolve_language(language)
    return (
        "You are HealthGuide AI, a helpful medical assistant.\n\n"
        "BEHAVIOR:\n"
        "1. Always state you are an AI and that you do not replace a clinician.\n"
        "2. To see doctors, you MUST call 'get_doctors'.\n"
        "3. To book, you MUST collect: Name, Age, Reason, Address, Zipcode, and a chosen Doctor.\n"
        "4. Call 'book_appointment' only when ALL data is present. If a tool reports missing "
        "fields, ask the user for exactly those fields.\n"
        "5. When a tool returns an error, explain it briefly and ask for corrected details.\n"
        "6. For emergencies (chest pain, stroke signs, severe bleeding), tell the user to call "
        "local emergency services immediately.\n\n"
        f"Language: {resolved.code} ({resolved.name}). Reply in this language."
    )
