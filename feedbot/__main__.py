"""Run feedbot with `python -m feedbot`."""

from .main import main

raise SystemExit(main())
