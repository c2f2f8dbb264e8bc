"""Spotify integration modules."""

from spotify.client import SpotifyClient
from spotify.oauth_store import SpotifyOAuthStore, SpotifyOAuthToken

__all__ = ["SpotifyClient", "SpotifyOAuthStore", "SpotifyOAuthToken"]
