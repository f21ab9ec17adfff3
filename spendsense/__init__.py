"""SpendSense console: sign-in session lifecycle and OAuth redirect coordination."""

__version__ = "0.1.0"
