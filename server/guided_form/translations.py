"""Assistant messages and field prompts per supported language."""
import re
from typing import Callable, Dict, List, Sequence, Union

Message = Union[str, Callable[..., str]]

DEFAULT_LANGUAGE = "en-US"

TRANSLATIONS: Dict[str, Dict[str, Message]] = {
    "en-US": {
        "welcome": lambda template_name, prepopulated: (
            "Welcome! I'm your onboarding assistant. I've already filled in some information "
            "from your profile. Here's what I have:\n" + "\n".join(prepopulated) + "\n\n"
            "Please confirm if these details are correct, or let me know if you'd like to update anything."
        ),
        "welcome_no_prepopulated": lambda template_name: (
            f"Let's complete your {template_name} form. I'll guide you through each field. "
            "You can answer with voice or text, and edit any field at any time."
        ),
        "all_complete": "Great! All required fields are complete. You can review and submit your form now.",
        "got_it": "Got it, thank you!",
        "looks_good": "Looks good",
        "need_to_update": "Need to update something",
        "looks_good_response": "Perfect! Now let's fill in the remaining fields. I'll guide you through each one.",
        "need_to_update_response": (
            "No problem! You can update any field in the form. Once you're ready, "
            "I'll help with the remaining fields."
        ),
        "skip_for_now": "Skip for now",
        "skip_response": "No problem, we can come back to this later.",
        "didnt_catch": "I didn't catch that. Could you try again?",
        "validation_error": lambda count: (
            f"I found {count} issue{'' if count == 1 else 's'} that need to be fixed before submitting. "
            "Please review the highlighted fields."
        ),
        "submit_error": "There was an error submitting your form. Please try again.",
        "submit_success": "Thank you! Your form has been submitted.",
        "help_with": lambda label, prompt: f"Let me help you with {label}. {prompt}",
        "language_changed": "Great! I will now speak in English.",
    },
    "it-IT": {
        "welcome": lambda template_name, prepopulated: (
            "Benvenuto! Sono il tuo assistente per l'onboarding. Ho già compilato alcune informazioni "
            "dal tuo profilo. Ecco cosa ho:\n" + "\n".join(prepopulated) + "\n\n"
            "Per favore conferma se questi dettagli sono corretti, o fammi sapere se vuoi aggiornare qualcosa."
        ),
        "welcome_no_prepopulated": lambda template_name: (
            f"Completiamo il tuo modulo {template_name}. Ti guiderò attraverso ogni campo. "
            "Puoi rispondere con voce o testo, e modificare qualsiasi campo in qualsiasi momento."
        ),
        "all_complete": "Ottimo! Tutti i campi obbligatori sono completi. Ora puoi rivedere e inviare il tuo modulo.",
        "got_it": "Capito, grazie!",
        "looks_good": "Va bene",
        "need_to_update": "Devo aggiornare qualcosa",
        "looks_good_response": "Perfetto! Ora compiliamo i campi rimanenti. Ti guiderò attraverso ognuno.",
        "need_to_update_response": (
            "Nessun problema! Puoi aggiornare qualsiasi campo del modulo. Quando sei pronto, "
            "ti aiuterò con i campi rimanenti."
        ),
        "skip_for_now": "Salta per ora",
        "skip_response": "Nessun problema, possiamo tornarci più tardi.",
        "didnt_catch": "Non ho capito. Potresti riprovare?",
        "validation_error": lambda count: (
            f"Ho trovato {count} {'problema' if count == 1 else 'problemi'} da correggere prima dell'invio. "
            "Rivedi i campi evidenziati."
        ),
        "submit_error": "Si è verificato un errore durante l'invio del modulo. Riprova.",
        "submit_success": "Grazie! Il tuo modulo è stato inviato.",
        "help_with": lambda label, prompt: f"Lascia che ti aiuti con {label}. {prompt}",
        "language_changed": "Perfetto! Ora parlerò in italiano.",
    },
}

SUPPORTED_LANGUAGES = tuple(TRANSLATIONS)

ITALIAN_PROMPTS = {
    "What is your full name?": "Qual è il tuo nome completo?",
    "What is your company name?": "Qual è il nome della tua azienda?",
    "What is your email address?": "Qual è il tuo indirizzo email?",
    "What is your phone number?": "Qual è il tuo numero di telefono?",
    "What is your address?": "Qual è il tuo indirizzo?",
    "What is your city?": "Qual è la tua città?",
    "What is your state?": "Qual è il tuo stato?",
    "What is your zip code?": "Qual è il tuo codice postale?",
    "What is your job title?": "Qual è il tuo titolo di lavoro?",
    "What is your date of birth?": "Qual è la tua data di nascita?",
    "What is your country?": "Qual è il tuo paese?",
}

ITALIAN_PHRASES = [
    (re.compile(r"What is your", re.IGNORECASE), "Qual è il tuo"),
    (re.compile(r"What is the", re.IGNORECASE), "Qual è il"),
    (re.compile(r"Please provide", re.IGNORECASE), "Per favore fornisci"),
    (re.compile(r"Please enter", re.IGNORECASE), "Per favore inserisci"),
    (re.compile(r"Could you provide", re.IGNORECASE), "Potresti fornire"),
    (re.compile(r"What should I put for", re.IGNORECASE), "Cosa devo inserire per"),
    (re.compile(r"Please tell me your", re.IGNORECASE), "Per favore dimmi il tuo"),
]

FIELD_PROMPTS = {"it-IT": (ITALIAN_PROMPTS, ITALIAN_PHRASES)}


def is_supported(language: str) -> bool:
    return language in TRANSLATIONS


def translate(language: str, key: str, *args) -> str:
    table = TRANSLATIONS.get(language, TRANSLATIONS[DEFAULT_LANGUAGE])
    message = table[key]
    if callable(message):
        return message(*args)
    return message


def all_translations(key: str) -> List[str]:
    """The literal message for ``key`` in every supported language."""
    return [table[key] for table in TRANSLATIONS.values() if isinstance(table[key], str)]


def translate_field_prompt(prompt: str, language: str) -> str:
    """Best-effort rewrite of an English field prompt into ``language``."""
    if language not in FIELD_PROMPTS:
        return prompt

    known, phrases = FIELD_PROMPTS[language]
    if prompt in known:
        return known[prompt]

    for english, translated in known.items():
        if english in prompt:
            return prompt.replace(english, translated)

    for pattern, replacement in phrases:
        prompt = pattern.sub(replacement, prompt)
    return prompt


def default_prompt(label: str, language: str) -> str:
    if language == "it-IT":
        return f"Qual è il tuo {label.lower()}?"
    return f"What is your {label.lower()}?"


def rephrasings(label: str, language: str) -> Sequence[str]:
    label = label.lower()
    if language == "it-IT":
        return (
            f"Potresti fornire il tuo {label}?",
            f"Cosa devo inserire per {label}?",
            f"Per favore dimmi il tuo {label}.",
        )
    return (
        f"Could you provide your {label}?",
        f"What should I put for {label}?",
        f"Please tell me your {label}.",
    )
