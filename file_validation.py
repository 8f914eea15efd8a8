import os
import re

from errors import ValidationError

MB = 1024 * 1024

BLOCKED_EXTENSIONS = {
    ".exe", ".bat", ".cmd", ".com", ".msi", ".scr", ".pif", ".gadget",
    ".vbs", ".vbe", ".js", ".jse", ".ws", ".wsf", ".wsc", ".wsh",
    ".ps1", ".ps1xml", ".ps2", ".ps2xml", ".psc1", ".psc2",
    ".sh", ".bash", ".csh", ".tcsh", ".zsh", ".fish",
    ".dll", ".so", ".dylib",
    ".sys", ".drv", ".cpl", ".ocx",
    ".reg",
    ".lnk", ".scf", ".url", ".website",
    ".jar", ".jnlp", ".class",
    ".app", ".action", ".command", ".workflow", ".pkg", ".dmg",
    ".inf", ".hta",
}

# Per-file ceiling by plan; "anonymous" covers senders without an account
MAX_FILE_SIZES = {
    "anonymous": 500 * MB,
    "free": 500 * MB,
    "starter": 1024 * MB,
    "pro": 2048 * MB,
    "business": 5120 * MB,
}

MAX_NAME_LENGTH = 255

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def get_extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower()


def sanitize_filename(filename: str) -> str:
    """Display name safe to store and to echo in Content-Disposition."""
    cleaned = re.sub(r"[/\\]", "_", filename or "").replace("\0", "").replace('"', "'").strip()
    cleaned = cleaned.lstrip(".")
    if len(cleaned) > MAX_NAME_LENGTH:
        ext = get_extension(cleaned)
        cleaned = cleaned[:MAX_NAME_LENGTH - len(ext)] + ext
    return cleaned or "unnamed_file"


def storage_safe_name(filename: str) -> str:
    """Restrict a name to characters that are safe inside an object key."""
    return _UNSAFE_KEY_CHARS.sub("_", sanitize_filename(filename))[:100]


def validate_file(filename: str, size: int, plan: str = "free"):
    ext = get_extension(filename)
    if ext in BLOCKED_EXTENSIONS:
        raise ValidationError(f'Files of type "{ext}" are not allowed', code="BLOCKED_EXTENSION")

    if size is None or size <= 0:
        raise ValidationError("File is empty", code="EMPTY_FILE")

    max_size = MAX_FILE_SIZES.get(plan, MAX_FILE_SIZES["free"])
    if size > max_size:
        raise ValidationError(
            f"File exceeds the {max_size // MB} MB limit for your plan",
            code="FILE_TOO_LARGE",
        )
