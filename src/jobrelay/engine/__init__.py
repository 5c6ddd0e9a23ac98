"""Bounded tool-calling execution against a language-model endpoint."""
