"""Input validation: checks user answers before they enter a turn."""

MAX_ANSWER_CHARS = 8000


def validate_input(user_text: str) -> str:
    """Validate that a user answer is a non-empty string.

    Returns the stripped input on success.
    Raises ValueError if input is empty, whitespace-only, or unreasonably long.
    """
    if not isinstance(user_text, str) or not user_text.strip():
        raise ValueError("User answer must be a non-empty string.")
    text = user_text.strip()
    if len(text) > MAX_ANSWER_CHARS:
        raise ValueError(f"User answer exceeds {MAX_ANSWER_CHARS} characters.")
    return text
