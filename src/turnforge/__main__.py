from __future__ import annotations

from turnforge.cli import app


def main() -> None:
    app(prog_name="turnforge")


if __name__ == "__main__":
    main()
