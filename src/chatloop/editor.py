"""Code-editor tools.

A small tool set that lets the model read and rewrite a shared text
buffer, typically the HTML shown in a side-by-side editor.
"""

import re

from chatloop.tools import Tool, tool

DEFAULT_CODE = '<html lang="en"><body><h1>Hello World!</h1></body></html>'

# JavaScript-style flag letters accepted by ``replace_in_editor_code``.
_REGEX_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
}


class EditorBuffer:
    """Holds the editor's current code."""

    def __init__(self, code: str = DEFAULT_CODE):
        self.code = code

    def set_code(self, code: str) -> None:
        self.code = code

    def clear(self) -> None:
        self.code = ""

    def replace(self, find: str, replace: str, is_regex: bool = False,
                flags: str = "g") -> int:
        """Replace matches of *find* with the literal *replace* text.

        Without ``g`` in *flags* only the first match is replaced.
        Returns the number of replacements made.

        Raises:
            ValueError: On an unknown flag letter.
            re.error: If *find* is not a valid regular expression.
        """
        re_flags = 0
        for letter in flags:
            if letter == "g":
                continue
            if letter not in _REGEX_FLAGS:
                raise ValueError(f"Unsupported regex flag: '{letter}'")
            re_flags |= _REGEX_FLAGS[letter]
        pattern = re.compile(find if is_regex else re.escape(find), re_flags)
        self.code, count = pattern.subn(
            lambda _: replace, self.code, count=0 if "g" in flags else 1,
        )
        return count


@tool(description="Return the current HTML in the editor.")
def get_editor_code(buffer: EditorBuffer):
    return buffer.code


@tool(description="Replace the entire HTML code in the editor.")
def set_editor_code(buffer: EditorBuffer, code: str):
    """
    Args:
        code: The full HTML to set in the editor.
    """
    buffer.set_code(code)
    return {"status": "ok", "length": len(buffer.code)}


@tool(description=(
    "Find and replace text within the current HTML. "
    "Use isRegex for regex replacements."
))
def replace_in_editor_code(buffer: EditorBuffer, find: str, replace: str,
                           isRegex: bool = False, flags: str = "g"):
    """
    Args:
        find: Text or pattern to look for.
        replace: Replacement text, inserted literally.
        isRegex: Treat ``find`` as a regular expression.
        flags: Regex flags; ``g`` replaces every match.
    """
    count = buffer.replace(find, replace, is_regex=isRegex, flags=flags)
    return {"status": "ok", "replacements": count, "length": len(buffer.code)}


def editor_tools(buffer: EditorBuffer) -> list[Tool]:
    """Build the editor tools bound to *buffer*."""
    return [
        t.bind(buffer=buffer)
        for t in (get_editor_code, set_editor_code, replace_in_editor_code)
    ]
