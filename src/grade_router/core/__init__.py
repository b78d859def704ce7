"""Core models, exceptions and collaborator interfaces."""
