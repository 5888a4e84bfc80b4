"""
Opening greetings and fixed assistant replies, per conversation type and locale.

Locales without a translation fall back to English.
"""

from __future__ import annotations

from src.assistant.language import DEFAULT_LANGUAGE, resolve_language
from src.assistant.models import ConversationType

_GREETINGS: dict[ConversationType, dict[str, str]] = {
    ConversationType.PATIENT_ASSISTANT: {
        "en-IN": (
            "Hello! I'm your digital health assistant. I can help you with explaining "
            "medical reports, scheduling appointments, medication reminders, symptom "
            "checking, and health information. How can I assist you today?"
        ),
        "hi-IN": (
            "नमस्ते! मैं आपका डिजिटल स्वास्थ्य सहायक हूं। मैं मेडिकल रिपोर्ट समझाने, "
            "अपॉइंटमेंट शेड्यूल करने, दवा रिमाइंडर, लक्षण जांच और स्वास्थ्य जानकारी में "
            "आपकी मदद कर सकता हूं। आज मैं आपकी कैसे मदद कर सकता हूं?"
        ),
    },
    ConversationType.PATIENT_HISTORY: {
        "en-IN": (
            "Hello! I'm here to help collect some information before your appointment. "
            "This will help your doctor provide better care. What brings you in today?"
        ),
        "hi-IN": (
            "नमस्ते! मैं आपकी अपॉइंटमेंट से पहले कुछ जानकारी इकट्ठा करने में मदद करूंगा। "
            "इससे आपके डॉक्टर को बेहतर देखभाल करने में मदद मिलेगी। आज आप किस वजह से आए हैं?"
        ),
    },
}

_ERROR_REPLIES: dict[str, str] = {
    "en-IN": "Sorry, I encountered an error. Please try again.",
    "hi-IN": "क्षमा करें, कोई त्रुटि हुई। कृपया फिर से प्रयास करें।",
}


def greeting_for(conversation_type: ConversationType, language: str) -> str:
    table = _GREETINGS[ConversationType(conversation_type)]
    return table.get(resolve_language(language), table[DEFAULT_LANGUAGE])


def error_reply_for(language: str) -> str:
    """The user-visible reply appended when a chat exchange fails."""
    return _ERROR_REPLIES.get(resolve_language(language), _ERROR_REPLIES[DEFAULT_LANGUAGE])
