"""Ecocert archiver: archives content cited by ecocert attestations to IPFS."""

__version__ = "1.0.0"
