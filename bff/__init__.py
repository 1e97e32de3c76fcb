"""Backend-for-frontend gateway: Google login plus credential issuance for the web client."""

__version__ = "0.1.0"
