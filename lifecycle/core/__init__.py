"""Core helpers shared by every engine component."""
