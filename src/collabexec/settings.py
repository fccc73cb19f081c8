from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.models import ResourceLimits

MB = 1024 * 1024


class ForbiddenPattern(BaseModel):
    category: str
    pattern: str


class LanguagePolicy(BaseModel):
    """Per-language runtime recipe plus its resource and security ceilings."""

    filename: str
    image: str
    run: List[str]
    compile: Optional[List[str]] = None

    memory_bytes: int = 256 * MB
    cpu_quota: float = 0.5
    max_processes: int = 50
    max_open_files: int = 64
    max_file_size_bytes: int = 1 * MB
    max_code_length: int = 50_000
    max_input_length: int = 1_000
    # V8 and the JVM reserve far more address space than they use
    limit_address_space: bool = True

    forbidden_patterns: List[ForbiddenPattern] = Field(default_factory=list)

    def resource_limits(self, timeout_ms: int, output_max_lines: int) -> ResourceLimits:
        return ResourceLimits(
            memory_bytes=self.memory_bytes,
            cpu_quota=self.cpu_quota,
            cpu_seconds=max(1, -(-timeout_ms // 1000)) + 1,
            max_processes=self.max_processes,
            max_open_files=self.max_open_files,
            max_file_size_bytes=self.max_file_size_bytes,
            output_max_lines=output_max_lines,
            wall_timeout_ms=timeout_ms,
            limit_address_space=self.limit_address_space,
        )


def _rules(*pairs) -> List[ForbiddenPattern]:
    return [ForbiddenPattern(category=c, pattern=p) for c, p in pairs]


_PY_IMPORT = r"^\s*(?:import|from)\s+(?:{mods})\b"

DEFAULT_LANGUAGES: Dict[str, LanguagePolicy] = {
    "python": LanguagePolicy(
        filename="main.py",
        image="python:3.11-alpine",
        run=["python3", "-B", "{file}"],
        forbidden_patterns=_rules(
            ("dynamic_eval", r"(?<![\w.])(?:eval|exec|compile)\s*\("),
            ("dynamic_eval", r"\b__import__\s*\("),
            ("dynamic_eval", _PY_IMPORT.format(mods="importlib|code|codeop")),
            ("sandbox_escape", r"__(?:subclasses|globals|builtins|code|loader)__"),
            ("sandbox_escape", _PY_IMPORT.format(mods="ctypes|cffi|gc|inspect")),
            ("filesystem_access", r"(?<![\w.])open\s*\("),
            ("filesystem_access", _PY_IMPORT.format(mods="os|shutil|pathlib|glob|tempfile|io|fileinput")),
            ("process_control", _PY_IMPORT.format(mods="subprocess|multiprocessing|pty|signal|threading")),
            ("process_control", r"\bos\.(?:system|popen|fork|kill|exec\w*|spawn\w*)\b"),
            ("network_access", _PY_IMPORT.format(
                mods="socket|ssl|urllib|http|ftplib|smtplib|telnetlib|requests|httpx|aiohttp")),
            ("interpreter_control", r"(?<![\w.])(?:exit|quit|breakpoint)\s*\("),
        ),
    ),
    "javascript": LanguagePolicy(
        filename="main.js",
        image="node:18-alpine",
        run=["node", "--max-old-space-size=128", "{file}"],
        limit_address_space=False,
        forbidden_patterns=_rules(
            ("dynamic_eval", r"\beval\s*\("),
            ("dynamic_eval", r"\b(?:new\s+)?Function\s*\("),
            ("module_access", r"""require\s*\(\s*['"](?:node:)?(?:fs|fs/promises|path|os|vm|v8|module)['"]\s*\)"""),
            ("module_access", r"""\bfrom\s+['"](?:node:)?(?:fs|fs/promises|path|os|vm|v8|module)['"]"""),
            ("process_control", r"""require\s*\(\s*['"](?:node:)?(?:child_process|cluster|worker_threads)['"]\s*\)"""),
            ("process_control", r"\bprocess\.(?:exit|kill|env|binding|dlopen|chdir)\b"),
            ("network_access", r"""require\s*\(\s*['"](?:node:)?(?:net|http|https|http2|dgram|dns|tls)['"]\s*\)"""),
            ("network_access", r"\bfetch\s*\("),
            ("sandbox_escape", r"\b(?:globalThis|global)\s*\.\s*process\b"),
        ),
    ),
    "cpp": LanguagePolicy(
        filename="main.cpp",
        image="gcc:13",
        compile=["g++", "-O2", "-std=c++17", "-o", "{workdir}/main", "{file}"],
        run=["{workdir}/main"],
        forbidden_patterns=_rules(
            ("filesystem_access", r"#\s*include\s*<(?:fstream|filesystem|dirent\.h|sys/stat\.h)>"),
            ("filesystem_access", r"\b(?:fopen|freopen|remove|rename|unlink)\s*\("),
            ("process_control", r"#\s*include\s*<(?:unistd\.h|sys/wait\.h|spawn\.h|signal\.h)>"),
            ("process_control", r"\b(?:system|fork|vfork|popen|exec[lv]p?e?|kill)\s*\("),
            ("network_access", r"#\s*include\s*<(?:sys/socket\.h|netinet/\w+\.h|arpa/inet\.h|netdb\.h)>"),
            ("sandbox_escape", r"\basm\s*(?:volatile\s*)?\(|\b__asm__\b|\bsyscall\s*\("),
        ),
    ),
    "java": LanguagePolicy(
        filename="Main.java",
        image="eclipse-temurin:17-jdk-alpine",
        compile=["javac", "-d", "{workdir}", "{file}"],
        run=["java", "-Xmx128m", "-cp", "{workdir}", "Main"],
        memory_bytes=512 * MB,
        limit_address_space=False,
        forbidden_patterns=_rules(
            ("process_control", r"\bRuntime\s*\.\s*getRuntime\b|\bProcessBuilder\b|\bSystem\s*\.\s*exit\s*\("),
            ("filesystem_access", r"\bjava\s*\.\s*nio\s*\.\s*file\b|\bjava\.io\.(?:File|RandomAccessFile)\w*\b"),
            ("filesystem_access", r"\bnew\s+File(?:Reader|Writer|InputStream|OutputStream)?\s*\("),
            ("network_access", r"\bjava\s*\.\s*net\b|\bSocket\s*\("),
            ("sandbox_escape", r"\bClass\s*\.\s*forName\b|\bjava\s*\.\s*lang\s*\.\s*reflect\b|\bsun\s*\.\s*misc\b"),
        ),
    ),
}


class Settings(BaseSettings):
    # ---- admission / queue ----
    max_concurrent_executions: int = 3
    max_queue_size: int = 10
    average_execution_ms: int = 5_000

    # ---- timing ----
    execution_timeout_ms: int = 30_000
    watchdog_grace_ms: int = 2_000
    cleanup_interval_ms: int = 60_000
    retention_window_ms: int = 24 * 60 * 60 * 1000

    # ---- sandbox ----
    backend: str = "process"          # process | docker
    isolation: str = "namespaces"     # namespaces | none (process backend)
    # "none" runs submissions as plain host processes; refused unless set
    allow_unsafe_isolation: bool = False
    use_cgroups: bool = False
    rlimit_nproc: bool = False
    scratch_root: Optional[Path] = None
    output_max_lines: int = 1_000

    # ---- store / misc ----
    database_url: str = "sqlite://"
    history_limit: int = 20
    log_level: str = "INFO"

    languages: Dict[str, LanguagePolicy] = Field(default_factory=lambda: dict(DEFAULT_LANGUAGES))

    # env prefix CXE_*
    model_config = SettingsConfigDict(env_prefix="CXE_", extra="ignore")

    def language(self, name: str) -> Optional[LanguagePolicy]:
        return self.languages.get(name)

    def limits_for(self, name: str) -> ResourceLimits:
        return self.languages[name].resource_limits(self.execution_timeout_ms, self.output_max_lines)


def _merge_languages(base: Dict[str, LanguagePolicy], overrides: Any) -> Dict[str, LanguagePolicy]:
    merged = dict(base)
    if not isinstance(overrides, dict):
        return merged
    for name, cfg in overrides.items():
        if not isinstance(cfg, dict):
            continue
        base_cfg = merged[name].model_dump() if name in merged else {}
        merged[name] = LanguagePolicy(**{**base_cfg, **cfg})
    return merged


def load_settings(path: Optional[Path] = None) -> Settings:
    # 0) base from CXE_* env
    s = Settings()

    # 1) conf/engine.yaml (or CXE_CONF)
    conf = Path(path or os.environ.get("CXE_CONF", "conf/engine.yaml"))
    try:
        with open(conf, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        data = {}
    if not isinstance(data, dict):
        data = {}

    engine = data.get("engine") or {}
    if not isinstance(engine, dict):
        engine = {}

    # 2) env wins over YAML: only take YAML keys the environment did not set
    update: Dict[str, Any] = {}
    for key, value in engine.items():
        if key not in Settings.model_fields or key == "languages":
            continue
        if f"CXE_{key.upper()}" in os.environ:
            continue
        update[key] = value
    if update:
        s = Settings.model_validate({**s.model_dump(exclude={"languages"}), **update,
                                     "languages": s.languages})

    # 3) per-language overlay
    languages = _merge_languages(s.languages, data.get("languages"))
    return s.model_copy(update={"languages": languages})
