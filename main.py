# main.py

from d2stats.cli import main


if __name__ == "__main__":
    raise SystemExit(main())
