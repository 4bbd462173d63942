"""ticketflow: folder-driven ticket processing daemon."""

# Version is set during build
__version__ = "0.1.0"
