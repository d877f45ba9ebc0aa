"""
Music recommendations for an emotion, via the Spotify Web API.

- SpotifyClient: PKCE authorization, token exchange/refresh, thin REST calls
- MusicRecommender: picks tracks for an emotion, refreshing an expired token
  once and falling back to built-in sample tracks when Spotify is unavailable
"""
from __future__ import annotations
import base64
import hashlib
import logging
import secrets
import string
import time
from datetime import date
from typing import Dict, List, Optional
from urllib.parse import urlencode

import requests

from aurasync.config import Settings
from aurasync.history import HistoryStore
from aurasync.models import AudioFeatures, EmotionLabel, Recommendation, SpotifyTokens, Track

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
TOKEN_URL = "https://accounts.spotify.com/api/token"
API_BASE = "https://api.spotify.com/v1"
REQUEST_TIMEOUT = 15
# Pending PKCE state older than this is dropped
PENDING_AUTH_TTL = 600


class SpotifyError(Exception):
    pass

class SpotifyAuthError(SpotifyError):
    pass

class SpotifyTokenExpired(SpotifyError):
    pass

class SpotifyApiError(SpotifyError):
    def __init__(self, status: int, message: str):
        self.status = status
        super().__init__(f"Spotify API error: {status} {message}")

class SpotifyNotConnected(SpotifyError):
    pass


# -----------------------------------------------------------------------------
# Emotion -> music vocabulary
# -----------------------------------------------------------------------------
GENRES: Dict[EmotionLabel, List[str]] = {
    EmotionLabel.HAPPY: ["pop", "dance", "indie-pop"],
    EmotionLabel.SAD: ["acoustic", "piano", "ambient"],
    EmotionLabel.ANGRY: ["rock", "metal", "hard-rock"],
    EmotionLabel.CALM: ["chill", "ambient", "acoustic"],
    EmotionLabel.SURPRISED: ["edm", "house", "electro"],
}
DEFAULT_GENRES = ["pop", "indie", "alternative"]

AUDIO_FEATURES: Dict[EmotionLabel, AudioFeatures] = {
    EmotionLabel.HAPPY: AudioFeatures(target_valence=0.8, target_energy=0.7, target_danceability=0.7),
    EmotionLabel.SAD: AudioFeatures(target_valence=0.2, target_energy=0.3, target_danceability=0.3),
    EmotionLabel.ANGRY: AudioFeatures(target_valence=0.3, target_energy=0.9, target_danceability=0.5),
    EmotionLabel.CALM: AudioFeatures(target_valence=0.5, target_energy=0.3, target_danceability=0.4),
    EmotionLabel.SURPRISED: AudioFeatures(target_valence=0.7, target_energy=0.9, target_danceability=0.8),
    EmotionLabel.NEUTRAL: AudioFeatures(target_valence=0.5, target_energy=0.5, target_danceability=0.5),
}


def _sample(id_: str, name: str, artist: str, album: str) -> Track:
    return Track(id=id_, name=name, artist=artist, album=album, image="/placeholder.svg")

SAMPLE_TRACKS: Dict[EmotionLabel, List[Track]] = {
    EmotionLabel.HAPPY: [
        _sample("mock-h-1", "Sunny Days", "The Brights", "Gold Sky"),
        _sample("mock-h-2", "Smile Again", "Good Vibes", "Feel Great"),
    ],
    EmotionLabel.SAD: [_sample("mock-s-1", "Blue Hour", "Quiet Rivers", "Rainy Streets")],
    EmotionLabel.ANGRY: [_sample("mock-a-1", "Roar Inside", "Voltage", "Ignite")],
    EmotionLabel.CALM: [_sample("mock-c-1", "Gentle Breeze", "Evening Shore", "Sea Foam")],
    EmotionLabel.SURPRISED: [_sample("mock-e-1", "Lift Off", "Star Trails", "Orbit")],
    EmotionLabel.NEUTRAL: [_sample("mock-n-1", "Wandering", "Open Roads", "Horizons")],
}


def _as_label(emotion: EmotionLabel | str) -> EmotionLabel:
    try:
        return EmotionLabel(emotion)
    except ValueError:
        return EmotionLabel.NEUTRAL

def genres_for(emotion: EmotionLabel | str) -> List[str]:
    return GENRES.get(_as_label(emotion), DEFAULT_GENRES)

def audio_features_for(emotion: EmotionLabel | str) -> AudioFeatures:
    return AUDIO_FEATURES.get(_as_label(emotion), AUDIO_FEATURES[EmotionLabel.NEUTRAL])

def sample_tracks(emotion: EmotionLabel | str) -> List[Track]:
    return list(SAMPLE_TRACKS.get(_as_label(emotion), SAMPLE_TRACKS[EmotionLabel.NEUTRAL]))

def convert_track(item: Dict) -> Track:
    album = item.get("album") or {}
    images = album.get("images") or []
    return Track(
        id=item["id"],
        name=item.get("name", ""),
        artist=", ".join(a.get("name", "") for a in item.get("artists") or []),
        album=album.get("name", ""),
        image=images[0].get("url", "") if images else "",
        preview_url=item.get("preview_url"),
        spotify_url=(item.get("external_urls") or {}).get("spotify"),
    )


# -----------------------------------------------------------------------------
# PKCE helpers
# -----------------------------------------------------------------------------
_PKCE_ALPHABET = string.ascii_letters + string.digits

def random_string(length: int) -> str:
    return "".join(secrets.choice(_PKCE_ALPHABET) for _ in range(length))

def code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class SpotifyClient:
    """Spotify accounts + Web API over ``requests``."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.client_id = settings.SPOTIFY_CLIENT_ID
        self.redirect_uri = settings.SPOTIFY_REDIRECT_URI
        self.scopes = settings.SPOTIFY_SCOPES
        self.http = session or requests.Session()
        # state -> (code_verifier, created_at)
        self._pending: Dict[str, tuple[str, float]] = {}

    # ---- auth ----
    def authorize_url(self) -> str:
        if not self.client_id:
            raise SpotifyAuthError("Spotify Client ID not configured. Set SPOTIFY_CLIENT_ID.")
        self._expire_pending()
        state = random_string(16)
        verifier = random_string(128)
        self._pending[state] = (verifier, time.time())
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "scope": self.scopes,
            "redirect_uri": self.redirect_uri,
            "state": state,
            "code_challenge_method": "S256",
            "code_challenge": code_challenge(verifier),
            "show_dialog": "true",
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def _expire_pending(self) -> None:
        cutoff = time.time() - PENDING_AUTH_TTL
        for st in [k for k, (_, ts) in self._pending.items() if ts < cutoff]:
            del self._pending[st]

    def exchange_code(self, code: str, state: str) -> SpotifyTokens:
        pending = self._pending.pop(state, None)
        if pending is None:
            raise SpotifyAuthError("State mismatch. Restart the Spotify connection.")
        verifier, _ = pending
        data = self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": verifier,
        }, "Token exchange failed")
        return SpotifyTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            token_type=data.get("token_type", "Bearer"),
        )

    def refresh(self, refresh_token: str) -> SpotifyTokens:
        data = self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
        }, "Token refresh failed")
        return SpotifyTokens(
            access_token=data["access_token"],
            # Spotify may or may not rotate the refresh token
            refresh_token=data.get("refresh_token") or refresh_token,
            expires_in=data.get("expires_in"),
        )

    def _token_request(self, form: Dict, what: str) -> Dict:
        resp = self.http.post(TOKEN_URL, data=form, timeout=REQUEST_TIMEOUT,
                              headers={"Content-Type": "application/x-www-form-urlencoded"})
        if not resp.ok:
            try:
                detail = resp.json().get("error_description")
            except ValueError:
                detail = None
            raise SpotifyAuthError(f"{what}: {detail or resp.reason}")
        return resp.json()

    # ---- web api ----
    def api_request(self, method: str, endpoint: str, access_token: str, **kwargs) -> Dict:
        resp = self.http.request(
            method, f"{API_BASE}{endpoint}",
            headers={"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"},
            timeout=REQUEST_TIMEOUT,
            **kwargs,
        )
        if resp.status_code == 401:
            raise SpotifyTokenExpired("SPOTIFY_TOKEN_EXPIRED")
        if not resp.ok:
            raise SpotifyApiError(resp.status_code, resp.reason or "")
        # 201/204 responses may carry no body
        return resp.json() if resp.content else {}

    def current_user(self, access_token: str) -> Dict:
        return self.api_request("GET", "/me", access_token)

    def is_premium(self, access_token: str) -> bool:
        return self.current_user(access_token).get("product") == "premium"

    def recommendations(self, access_token: str, emotion: EmotionLabel | str, limit: int = 10) -> List[Track]:
        params = {"seed_genres": ",".join(genres_for(emotion)[:5]), "limit": limit}
        params.update(audio_features_for(emotion).model_dump())
        data = self.api_request("GET", "/recommendations", access_token, params=params)
        return [convert_track(t) for t in data.get("tracks") or [] if t and t.get("id")]

    def create_playlist(self, user_id: str, name: str, description: str, access_token: str) -> Dict:
        return self.api_request("POST", f"/users/{user_id}/playlists", access_token,
                                json={"name": name, "description": description, "public": False})

    def add_tracks(self, playlist_id: str, uris: List[str], access_token: str) -> Dict:
        return self.api_request("POST", f"/playlists/{playlist_id}/tracks", access_token,
                                json={"uris": uris})


def playlist_name(emotion: EmotionLabel | str) -> str:
    return f"AuraSync - {_as_label(emotion).value.capitalize()} Vibes"


class MusicRecommender:
    """Glue between the history/profile store and the Spotify client."""

    def __init__(self, client: SpotifyClient, store: HistoryStore):
        self.client = client
        self.store = store

    def _with_refresh(self, call):
        """Run ``call(access_token)``; on expiry refresh once, persist, retry."""
        profile = self.store.profile()
        if not profile.access_token:
            raise SpotifyNotConnected("Connect Spotify in your profile for personalized music.")
        try:
            return call(profile.access_token)
        except SpotifyTokenExpired:
            if not profile.refresh_token:
                raise
            logger.info("[music] Spotify token expired; refreshing")
            tokens = self.client.refresh(profile.refresh_token)
            self.store.save_spotify_tokens(tokens)
            return call(tokens.access_token)

    def recommend(self, emotion: EmotionLabel | str, limit: int = 10) -> Recommendation:
        label = _as_label(emotion)
        fallback = Recommendation(emotion=label, source="sample", spotify_connected=False,
                                  tracks=sample_tracks(label))
        try:
            tracks = self._with_refresh(lambda tok: self.client.recommendations(tok, label, limit))
        except SpotifyNotConnected:
            return fallback
        except SpotifyError:
            logger.exception("[music] Spotify recommendations failed; using samples")
            return fallback
        if not tracks:
            logger.info(f"[music] no Spotify tracks for {label.value}; using samples")
            return fallback.model_copy(update={"spotify_connected": True})
        return Recommendation(emotion=label, source="spotify", spotify_connected=True, tracks=tracks)

    def save_playlist(self, emotion: EmotionLabel | str, tracks: List[Track]) -> Dict:
        """Create a private playlist from the real (non-sample) tracks."""
        uris = [f"spotify:track:{t.id}" for t in tracks if t.id and not t.id.startswith("mock")]
        if not uris:
            raise SpotifyApiError(400, "no Spotify tracks to save")

        def _save(token: str) -> Dict:
            if not self.client.is_premium(token):
                raise SpotifyApiError(403, "Spotify Premium is required to save playlists")
            user_id = self.store.profile().spotify_user_id or self.client.current_user(token)["id"]
            label = _as_label(emotion)
            playlist = self.client.create_playlist(
                user_id,
                playlist_name(label),
                f"AI-generated playlist for your {label.value} mood. "
                f"Created by AuraSync on {date.today().isoformat()}",
                token,
            )
            self.client.add_tracks(playlist["id"], uris, token)
            return {"playlist_id": playlist["id"],
                    "url": (playlist.get("external_urls") or {}).get("spotify"),
                    "tracks": len(uris)}

        return self._with_refresh(_save)

    def connect(self, code: str, state: str) -> Dict:
        tokens = self.client.exchange_code(code, state)
        me = self.client.current_user(tokens.access_token)
        profile = self.store.save_spotify_tokens(tokens, spotify_user_id=me.get("id"))
        if not profile.display_name and me.get("display_name"):
            self.store.update_profile(display_name=me["display_name"])
        return {"spotify_user_id": me.get("id"), "display_name": me.get("display_name")}
