"""ChessBot tournament core: ELO ratings and tournament lifecycle."""

__version__ = "1.0.0"
__author__ = "ChessBot Development Team"
__status__ = "production"
