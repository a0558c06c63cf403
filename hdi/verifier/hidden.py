from __future__ import annotations


def _is_blank_char(ch: str) -> bool:
    return ord(ch) <= 0x20 or ch.isspace()


def all_space(name: str) -> bool:
    if not name:
        return False
    return all(_is_blank_char(ch) for ch in name)


def is_hidden(name: str) -> bool:
    """True for names commonly used to hide content: '...x', '..' + blank, or all blanks."""
    if name.startswith("..."):
        return True
    if name.startswith("..") and len(name) > 2 and _is_blank_char(name[2]):
        return True
    return all_space(name)
