import json
import threading
from dataclasses import replace
from pathlib import Path

import pytest
import toml
from returns.io import IOSuccess
from returns.pipeline import is_successful
from returns.unsafe import unsafe_perform_io

from cargo_hyperlight import sysroot
from cargo_hyperlight.errors import (
    FilesystemError,
    QueryFailed,
    SysrootBuildFailed,
    UnsupportedTarget,
)

from conftest import EXPORTED, TARGET


def lib_names(config) -> set[str]:
    return {entry.name for entry in config.libs_dir.iterdir()}


def test_build_from_empty_directory(fake_cargo, config) -> None:
    result = sysroot.build(config)

    assert result == IOSuccess(config.sysroot_dir)
    assert lib_names(config) == EXPORTED
    assert fake_cargo.kinds() == ["target-spec", "version", "build-plan", "sysroot-build"]


def test_target_descriptor_is_written(fake_cargo, config) -> None:
    sysroot.build(config)
    spec = json.loads((config.triplet_dir / "target.json").read_text())
    assert spec["entry-name"] == "entrypoint"
    assert "is-builtin" not in spec


def test_scratch_crate(fake_cargo, config) -> None:
    sysroot.build(config)
    manifest = toml.loads((config.crate_dir / "Cargo.toml").read_text())
    assert manifest["package"]["name"] == "sysroot"
    assert manifest["package"]["rust-version"] == "1.89.0"
    assert manifest["profile"]["release"]["panic"] == "abort"
    assert manifest["profile"]["dev"]["panic"] == "abort"
    assert manifest["workspace"] == {}
    assert (config.crate_dir / "lib.rs").read_text() == "#![no_std]\n"


def test_build_plan_is_kept(fake_cargo, config) -> None:
    sysroot.build(config)
    plan = json.loads((config.build_plan_dir / "build-plan.json").read_text())
    assert plan["invocations"]


def test_sysroot_build_environment(fake_cargo, config) -> None:
    config = replace(config, env={**config.env, "RUSTC_WORKSPACE_WRAPPER": "/bin/wrap"})
    sysroot.build(config)

    call = fake_cargo.last("sysroot-build")
    assert "RUSTC_WORKSPACE_WRAPPER" not in call.env
    assert call.env["RUSTC_BOOTSTRAP"] == "1"
    assert call.env["RUSTFLAGS"] == f"--sysroot={config.sysroot_dir}"
    assert "-Zbuild-std-features=compiler_builtins/mem" in call.command
    assert call.command[call.command.index("--target") + 1] == TARGET
    assert call.command[call.command.index("--target-dir") + 1] == str(config.build_dir)
    assert "--release" in call.command


def test_cached_sysroot_is_not_rebuilt(fake_cargo, config) -> None:
    sysroot.build(config)
    before = {e.name: e.stat().st_mtime_ns for e in config.libs_dir.iterdir()}
    fake_cargo.calls.clear()

    assert sysroot.build(config) == IOSuccess(config.sysroot_dir)

    assert "sysroot-build" not in fake_cargo.kinds()
    assert {e.name: e.stat().st_mtime_ns for e in config.libs_dir.iterdir()} == before


def test_stale_libraries_are_pruned(fake_cargo, config) -> None:
    config.libs_dir.mkdir(parents=True)
    (config.libs_dir / "libcore-ffff.rlib").write_text("old")
    (config.libs_dir / "leftovers").mkdir()

    sysroot.build(config)

    assert lib_names(config) == EXPORTED


def test_missing_library_triggers_rebuild(fake_cargo, config) -> None:
    sysroot.build(config)
    (config.build_dir / TARGET / "release" / "deps" / "liballoc-2c3d.rlib").unlink()
    fake_cargo.calls.clear()

    sysroot.build(config)

    assert "sysroot-build" in fake_cargo.kinds()
    assert lib_names(config) == EXPORTED


def test_build_failure(fake_cargo, config) -> None:
    fake_cargo.fail.add("sysroot-build")
    error = unsafe_perform_io(sysroot.build(config).failure())
    assert isinstance(error, SysrootBuildFailed)
    assert not config.libs_dir.exists()


def test_build_plan_failure(fake_cargo, config) -> None:
    fake_cargo.fail.add("build-plan")
    error = unsafe_perform_io(sysroot.build(config).failure())
    assert isinstance(error, QueryFailed)
    assert "error: build-plan failed" in str(error)


def test_cargo_version_failure(fake_cargo, config) -> None:
    fake_cargo.fail.add("version")
    error = unsafe_perform_io(sysroot.build(config).failure())
    assert isinstance(error, QueryFailed)
    assert "sysroot-build" not in fake_cargo.kinds()


def test_unsupported_target_writes_nothing(fake_cargo, config) -> None:
    config = replace(config, target="aarch64-hyperlight-none")
    error = unsafe_perform_io(sysroot.build(config).failure())
    assert isinstance(error, UnsupportedTarget)
    assert not config.sysroot_dir.exists()
    assert fake_cargo.calls == []


def test_rust_src_installed_for_rustup_toolchain(fake_cargo, config) -> None:
    config = replace(config, env={**config.env, "RUSTUP_TOOLCHAIN": "nightly"})
    sysroot.build(config)
    assert fake_cargo.last("rustup").command == (
        "rustup", "component", "add", "rust-src", "--toolchain", "nightly",
    )


def test_rust_src_failure_is_not_fatal(fake_cargo, config, capsys) -> None:
    fake_cargo.fail.add("rustup")
    config = replace(config, env={**config.env, "RUSTUP_TOOLCHAIN": "nightly"})

    assert is_successful(sysroot.build(config))
    assert "could not install rust-src" in capsys.readouterr().err


def test_rust_src_skipped_without_rustup(fake_cargo, config) -> None:
    sysroot.build(config)
    assert "rustup" not in fake_cargo.kinds()


@pytest.mark.parametrize(
    "plan",
    [
        json.dumps({"invocations": [{"outputs": ["/t/deps/libcore-1.rlib"]}]}),
        "\n".join(
            [
                json.dumps({"invocations": [{"outputs": ["/t/deps/libcore-1.rlib"]}]}),
                json.dumps({"invocations": [{"outputs": ["/t/deps/libsysroot-2.rlib"]}]}),
                "",
            ]
        ),
    ],
)
def test_parse_build_plan(plan: str) -> None:
    assert sysroot.parse_build_plan(plan) == IOSuccess(
        frozenset({Path("/t/deps/libcore-1.rlib")})
    )


@pytest.mark.parametrize("plan", ["", "{", json.dumps({"invocations": []})])
def test_unusable_build_plan(plan: str) -> None:
    error = unsafe_perform_io(sysroot.parse_build_plan(plan).failure())
    assert isinstance(error, QueryFailed)


def test_filter_artifacts() -> None:
    outputs = [
        "/t/deps/libcore-1.rlib",
        "/t/deps/libcore-1.rmeta",
        "/t/deps/libcore-1.d",
        "/t/deps/libsysroot-3.rlib",
        "/t/deps/libsysroot_helpers-4.rlib",
        "/t/build/compiler_builtins-5/build_script_build-5",
    ]
    assert sysroot.filter_artifacts(outputs) == frozenset(
        map(
            Path,
            [
                "/t/deps/libcore-1.rlib",
                "/t/deps/libcore-1.rmeta",
                "/t/deps/libsysroot_helpers-4.rlib",
            ],
        )
    )


def test_cache_hit_is_reported(fake_cargo, config, capsys) -> None:
    sysroot.build(config)
    assert "copying 'libcore-0a1b.rlib'" in capsys.readouterr().err

    sysroot.build(config)
    err = capsys.readouterr().err
    assert "up to date" in err
    assert "copying" not in err


def test_failed_write_keeps_previous_file(fake_cargo, config, monkeypatch) -> None:
    sysroot.build(config)
    manifest = config.crate_dir / "Cargo.toml"
    before = manifest.read_text()
    write_text = Path.write_text

    def short_write(self, data, *args, **kwargs):
        write_text(self, data[:16], *args, **kwargs)
        raise OSError(27, "File too large")

    monkeypatch.setattr(Path, "write_text", short_write)
    error = unsafe_perform_io(sysroot.build(config).failure())

    assert isinstance(error, FilesystemError)
    assert error.path == manifest
    assert manifest.read_text() == before
    assert sorted(entry.name for entry in config.crate_dir.iterdir()) == [
        "Cargo.toml",
        "lib.rs",
    ]


def test_concurrent_build_waits_for_the_lock(fake_cargo, config) -> None:
    results = []
    worker = threading.Thread(target=lambda: results.append(sysroot.build(config)))

    with sysroot.sysroot_lock(config.lock_file):
        worker.start()
        worker.join(timeout=0.5)
        assert worker.is_alive()
        assert set(fake_cargo.kinds()) <= {"target-spec"}
        assert not config.crate_dir.exists()
        assert not config.triplet_dir.exists()

    worker.join(timeout=10)
    assert results == [IOSuccess(config.sysroot_dir)]
    assert lib_names(config) == EXPORTED


def test_lock_is_released_after_failure(fake_cargo, config) -> None:
    fake_cargo.fail.add("sysroot-build")
    assert not is_successful(sysroot.build(config))

    fake_cargo.fail.clear()
    assert sysroot.build(config) == IOSuccess(config.sysroot_dir)


def test_platform_lock_is_imported_lazily() -> None:
    assert "fcntl" not in vars(sysroot)
