"""Version identifiers for the Dini chat client (terminal banner, gateway User-Agent)."""

PROJECT_NAME = "Dini Chat Client"
VERSION = "0.3.0"
BUILD = "2026.10"


def as_string() -> str:
    return f"{PROJECT_NAME} {VERSION} (Build {BUILD})"


def user_agent() -> str:
    return f"dinichat/{VERSION}"
