import sys

from returns.pipeline import is_successful
from returns.unsafe import unsafe_perform_io

from cargo_hyperlight.command import EXEC_FAILURE, cargo, report


def main():
    argv = sys.argv[1:]
    # cargo runs external subcommands as `cargo-hyperlight hyperlight <args>`
    if argv[:1] == ["hyperlight"]:
        argv = argv[1:]

    command = cargo()
    if not is_successful(command):
        report(unsafe_perform_io(command.failure()))
        sys.exit(EXEC_FAILURE)
    unsafe_perform_io(command.unwrap()).args(argv).exec()


if __name__ == "__main__":
    main()
