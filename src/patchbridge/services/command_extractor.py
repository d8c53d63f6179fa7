"""Extraction of file-modification commands from free-form generated text.

The model is asked to wrap file edits in a small tag grammar:

    [CODE:path/File.cs] ... [/CODE]              create or overwrite a file
    [MODIFY:path/File.cs:Section] ... [/MODIFY]  replace one marked section
    [DELETE:path/File.cs]                        delete a file

Extraction is best-effort: generated text is not trusted to be well formed,
so anything that does not match a tag exactly is left alone rather than
reported. The broker only depends on the ``CommandExtractor`` protocol.
"""

from __future__ import annotations

import logging
import re
from typing import List, Protocol

from ..domain.models import CodeCommand, Operation


logger = logging.getLogger("patchbridge.extractor")

_PATH = r"[\w/.]+"
_SECTION = r"\w+"


class CommandExtractor(Protocol):
    def extract(self, text: str) -> List[CodeCommand]: ...


class TaggedBlockExtractor:
    """Regex implementation of the tagged-block grammar.

    The three forms are scanned independently over the whole text, so the
    result lists every create block first, then every modify block, then
    every delete tag, regardless of where they appear relative to each
    other.
    """

    def __init__(self, create_tag: str = "CODE", modify_tag: str = "MODIFY", delete_tag: str = "DELETE") -> None:
        c, m, d = (re.escape(t) for t in (create_tag, modify_tag, delete_tag))
        self._create_re = re.compile(rf"\[{c}:({_PATH})\]([\s\S]*?)\[/{c}\]")
        self._modify_re = re.compile(rf"\[{m}:({_PATH}):({_SECTION})\]([\s\S]*?)\[/{m}\]")
        self._delete_re = re.compile(rf"\[{d}:({_PATH})\]")

    def extract(self, text: str) -> List[CodeCommand]:
        if not text:
            return []
        commands: List[CodeCommand] = []

        for match in self._create_re.finditer(text):
            path = match.group(1).strip()
            logger.debug("Create command detected: %s", path)
            commands.append(CodeCommand(Operation.CREATE, path, match.group(2).strip()))

        for match in self._modify_re.finditer(text):
            path, section = match.group(1).strip(), match.group(2).strip()
            logger.debug("Modify command detected: %s (section %s)", path, section)
            commands.append(CodeCommand(Operation.MODIFY, path, match.group(3).strip(), section=section))

        for match in self._delete_re.finditer(text):
            path = match.group(1).strip()
            logger.debug("Delete command detected: %s", path)
            commands.append(CodeCommand(Operation.DELETE, path, ""))

        return commands
