"""Answer-language instructions appended to AI prompts."""

from __future__ import annotations


LANGUAGE_PROMPTS: dict[str, str] = {
    "en": "Respond in English.",
    "zh": "请用简体中文回答。",
    "zh-TW": "請用繁體中文回答。",
    "ja": "日本語で回答してください。",
    "ko": "한국어로 답변해주세요.",
    "es": "Responde en español.",
    "fr": "Répondez en français.",
    "de": "Antworten Sie auf Deutsch.",
    "it": "Rispondi in italiano.",
    "pt": "Responda em português.",
    "ru": "Ответьте на русском языке.",
    "ar": "أجب باللغة العربية.",
    "hi": "हिंदी में उत्तर दें।",
    "th": "ตอบเป็นภาษาไทย",
    "vi": "Trả lời bằng tiếng Việt.",
}


def get_language_specific_prompt(language_code: str) -> str:
    return LANGUAGE_PROMPTS.get(language_code or "", LANGUAGE_PROMPTS["en"])
