from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Dict, List, Mapping, Optional, Sequence, Union

from .errors import ValidationError
from .models import Language


@dataclass(frozen=True)
class LanguageSpec:
    language: Language
    extension: str
    image: str
    # run inside the container, cwd=/app; "{file}" is the source file name
    container_argv: Sequence[str]
    # run on the host, cwd=workspace
    host_argv: Sequence[str]
    # RLIMIT_AS on the host backend; runtimes that reserve large virtual
    # ranges up front (node, go) rely on the cgroup memory ceiling instead
    cap_address_space: bool = False
    # binary the host backend needs when host_argv goes through `sh -c`
    host_tool: Optional[str] = None

    @property
    def source_name(self) -> str:
        return f"main.{self.extension}"

    def container_command(self) -> List[str]:
        return [a.format(file=self.source_name) for a in self.container_argv]

    def host_command(self) -> List[str]:
        return [a.format(file=self.source_name) for a in self.host_argv]

    def host_binary(self) -> str:
        if self.host_argv[0] == "sh" and self.host_tool:
            return self.host_tool
        return self.host_argv[0]


# compiled languages build and run in one invocation; a compile error is
# an ordinary non-zero exit with the compiler output on stderr
LANGUAGES: Dict[Language, LanguageSpec] = {
    Language.PYTHON: LanguageSpec(
        Language.PYTHON, "py", "python:3.9-slim",
        ["python", "-u", "{file}"],
        ["python3", "-u", "{file}"],
        cap_address_space=True,
    ),
    Language.JAVASCRIPT: LanguageSpec(
        Language.JAVASCRIPT, "js", "node:18-alpine",
        ["node", "{file}"],
        ["node", "{file}"],
    ),
    Language.CPP: LanguageSpec(
        Language.CPP, "cpp", "gcc:latest",
        ["sh", "-c", "g++ -O2 -o /tmp/out {file} && /tmp/out"],
        ["sh", "-c", "g++ -O2 -o ./out {file} && ./out"],
        host_tool="g++",
    ),
    Language.GO: LanguageSpec(
        Language.GO, "go", "golang:1.20-alpine",
        ["sh", "-c", "GOCACHE=/tmp/go-cache go run {file}"],
        ["sh", "-c", "GOCACHE=$PWD/.cache go run {file}"],
        host_tool="go",
    ),
}


def parse_language(value: Union[str, Language, None]) -> Language:
    if isinstance(value, Language):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("language is required")
    try:
        return Language(value.strip().lower())
    except ValueError:
        supported = ", ".join(l.value for l in Language)
        raise ValidationError(f"Unsupported language '{value}' (supported: {supported})") from None


def language_table(
    images: Optional[Mapping[str, str]] = None,
    host_toolchains: Optional[Mapping[str, Sequence[str]]] = None,
) -> Dict[Language, LanguageSpec]:
    """LANGUAGES with image / host toolchain overrides from settings applied."""
    table = dict(LANGUAGES)
    for key, image in (images or {}).items():
        lang = parse_language(key)
        spec = table[lang]
        table[lang] = replace(spec, image=image)
    for key, argv in (host_toolchains or {}).items():
        lang = parse_language(key)
        spec = table[lang]
        table[lang] = replace(spec, host_argv=list(argv))
    return table
