from cargo_hyperlight.command import CargoCommand, cargo

__all__ = ["CargoCommand", "cargo"]
