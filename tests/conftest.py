"""Shared test fixtures: a fake cargo answering through `subprocess.run`."""

import json
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from cargo_hyperlight.args import Configuration
from cargo_hyperlight.cargo import CargoBinary

CARGO = Path("/fake/bin/cargo")
TARGET = "x86_64-hyperlight-none"

BASE_SPEC = {
    "arch": "x86_64",
    "code-model": "kernel",
    "is-builtin": True,
    "linker-flavor": "gnu-lld-cc",
    "llvm-target": "x86_64-unknown-none-elf",
    "os": "none",
}

LIBRARIES = (
    "libcore-0a1b.rlib",
    "libcore-0a1b.rmeta",
    "liballoc-2c3d.rlib",
    "liballoc-2c3d.rmeta",
    "libcompiler_builtins-4e5f.rlib",
    "libcompiler_builtins-4e5f.rmeta",
    "libsysroot-6a7b.rlib",
    "libsysroot-6a7b.rmeta",
)

EXPORTED = {name for name in LIBRARIES if not name.startswith("libsysroot-")}


@dataclass
class Call:
    kind: str
    command: tuple[str, ...]
    env: dict[str, str]
    cwd: Path | None


def _option(cmd: tuple[str, ...], name: str) -> str:
    return cmd[cmd.index(name) + 1]


@dataclass
class FakeCargo:
    libraries: tuple[str, ...] = LIBRARIES
    fail: set[str] = field(default_factory=set)
    target_spec: str = json.dumps(BASE_SPEC)
    metadata: dict = field(default_factory=dict)
    config_target: str = ""
    calls: list[Call] = field(default_factory=list)

    def kind(self, cmd: tuple[str, ...]) -> str:
        if cmd[0] == "rustup":
            return "rustup"
        if "--version" in cmd:
            return "version"
        if "--print=target-spec-json" in cmd:
            return "target-spec"
        if "--build-plan" in cmd:
            return "build-plan"
        if "metadata" in cmd:
            return "metadata"
        if "config" in cmd:
            return "config"
        if "build" in cmd and "-Zbuild-std=core,alloc" in cmd:
            return "sysroot-build"
        return cmd[1] if len(cmd) > 1 else "cargo"

    def outputs(self, cmd: tuple[str, ...]) -> list[str]:
        release = Path(_option(cmd, "--target-dir")) / _option(cmd, "--target") / "release"
        return [str(release / "deps" / name) for name in self.libraries] + [
            str(release / "build" / "compiler_builtins-8c9d" / "build_script_build-8c9d")
        ]

    def __call__(self, cmd, env=None, cwd=None, capture_output=False, **kwargs):
        cmd = tuple(cmd)
        kind = self.kind(cmd)
        self.calls.append(Call(kind, cmd, dict(env or {}), cwd))
        if kind in self.fail:
            return subprocess.CompletedProcess(cmd, 1, "", f"error: {kind} failed\n")

        stdout = ""
        match kind:
            case "version":
                stdout = "cargo 1.89.0-nightly (6833aa715 2025-06-01)\n"
            case "target-spec":
                stdout = self.target_spec
            case "build-plan":
                plan = {"invocations": [{"outputs": self.outputs(cmd)}], "inputs": []}
                stdout = json.dumps(plan) + "\n"
            case "metadata":
                stdout = json.dumps(self.metadata)
            case "config":
                stdout = self.config_target
            case "sysroot-build":
                for output in map(Path, self.outputs(cmd)):
                    output.parent.mkdir(parents=True, exist_ok=True)
                    output.write_text(output.name)
        return subprocess.CompletedProcess(cmd, 0, stdout, "")

    def kinds(self) -> list[str]:
        return [call.kind for call in self.calls]

    def last(self, kind: str) -> Call:
        return [call for call in self.calls if call.kind == kind][-1]


@pytest.fixture
def fake_cargo(monkeypatch) -> FakeCargo:
    fake = FakeCargo()
    monkeypatch.setattr(subprocess, "run", fake)
    return fake


@pytest.fixture
def config(tmp_path: Path) -> Configuration:
    return Configuration(
        manifest_path=None,
        target_dir=tmp_path / "target",
        target=TARGET,
        env={"PATH": "/usr/bin", "HOME": "/home/guest"},
        current_dir=tmp_path,
        cc=Path("/usr/bin/clang"),
        ar=Path("/usr/bin/ar"),
        cargo=CargoBinary(CARGO),
    )


def make_tool(directory: Path, name: str, executable: bool = True) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    tool = directory / name
    tool.write_text("#!/bin/sh\n")
    tool.chmod(0o755 if executable else 0o644)
    return tool
