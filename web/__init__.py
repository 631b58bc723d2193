"""Flask app exposing the Spec Builder JSON API."""
