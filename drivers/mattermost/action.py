# "/me" style actions travel as emphasised text: *waves*

MARKER = "*"


def decode(text: str) -> tuple[str, bool]:
    """Return ``(text, is_action)``.

    Text framed by a leading and a trailing marker loses every marker and is
    reported as an action; anything else comes back unchanged.
    """
    if len(text) > 1 and text.startswith(MARKER) and text.endswith(MARKER):
        return text.replace(MARKER, ""), True
    return text, False


def encode(text: str) -> str:
    return f"{MARKER}{text}{MARKER}"
