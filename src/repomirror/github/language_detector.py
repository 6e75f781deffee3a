"""Extension-based language tagging for mirrored files.

The tag is derived from a static extension table only; file contents are
never inspected.
"""

from __future__ import annotations

from typing import Dict, Optional


EXTENSION_LANGUAGES: Dict[str, str] = {
    "java": "Java",
    "js": "JavaScript",
    "jsx": "JavaScript",
    "ts": "TypeScript",
    "tsx": "TypeScript",
    "py": "Python",
    "html": "HTML",
    "htm": "HTML",
    "css": "CSS",
    "scss": "SCSS",
    "sass": "SCSS",
    "json": "JSON",
    "xml": "XML",
    "md": "Markdown",
    "yml": "YAML",
    "yaml": "YAML",
    "sql": "SQL",
    "sh": "Shell",
    "dockerfile": "Dockerfile",
}


def file_extension(file_name: str) -> Optional[str]:
    """Return the lowercased text after the last dot, or None.

    Args:
        file_name: Base name of the file (not a full path)

    Returns:
        Extension without the dot, or None when the name has no dot
    """
    if "." not in file_name:
        return None
    extension = file_name.rsplit(".", 1)[1].lower()
    return extension or None


def detect_language(file_name: str) -> Optional[str]:
    """Map a file name to a language tag.

    Names without an extension are looked up whole, so ``Dockerfile`` is
    tagged too.

    Args:
        file_name: Base name of the file

    Returns:
        Language tag or None if unknown
    """
    key = file_extension(file_name) or file_name.lower()
    return EXTENSION_LANGUAGES.get(key)


__all__ = ["EXTENSION_LANGUAGES", "detect_language", "file_extension"]
