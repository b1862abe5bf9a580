"""dir2txt: export a project directory as a single text or markdown document."""

__version__ = "0.1.0"
