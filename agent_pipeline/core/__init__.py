"""Core contracts: configuration, types, exceptions, collaborator interfaces."""
