from __future__ import annotations

from input.track_links import detect_track_urls, extract_track_id, extract_track_ids


def test_extracts_open_spotify_track_and_drops_query() -> None:
    text = "listen https://open.spotify.com/track/4uLU6hMCjMI75M1A2tKUQC?si=abc123 now"

    assert extract_track_ids(text) == ["4uLU6hMCjMI75M1A2tKUQC"]


def test_supports_play_http_uri_and_localized_forms() -> None:
    text = (
        "http://play.spotify.com/track/AAA111 "
        "spotify:track:BBB222 "
        "https://open.spotify.com/intl-de/track/CCC333 "
        "https://open.spotify.com/intl-pt-br/track/DDD444"
    )

    assert extract_track_ids(text) == ["AAA111", "BBB222", "CCC333", "DDD444"]


def test_matching_is_case_insensitive() -> None:
    assert extract_track_ids("HTTPS://OPEN.SPOTIFY.COM/TRACK/abcDEF123") == ["abcDEF123"]


def test_ignores_album_playlist_and_artist_links() -> None:
    text = (
        "https://open.spotify.com/album/1DFixLWuPkv3KT3TnV35m3 "
        "https://open.spotify.com/playlist/37i9dQZF1DXcBWIGoYBM5M "
        "spotify:artist:0OdUWJ0sBjDrqHygGUXeCF"
    )

    assert extract_track_ids(text) == []


def test_duplicate_links_in_one_message_collapse_to_first_position() -> None:
    text = "spotify:track:XYZ https://open.spotify.com/track/ABC https://open.spotify.com/track/XYZ?si=1"

    assert detect_track_urls(text) == [
        "spotify:track:XYZ",
        "https://open.spotify.com/track/ABC",
        "https://open.spotify.com/track/XYZ",
    ]
    assert extract_track_ids(text) == ["XYZ", "ABC"]


def test_empty_and_non_track_input() -> None:
    assert extract_track_ids(None) == []
    assert extract_track_ids("   ") == []
    assert extract_track_id("https://example.com/track/abc") is None
    assert extract_track_id("spotify:track:Q1w2E3") == "Q1w2E3"
