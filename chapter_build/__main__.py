"""Allow ``python -m chapter_build``."""

from chapter_build.pipeline import main

main()
