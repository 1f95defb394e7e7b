"""Cliente HTTP del servicio de audio para despliegues donde el bot no lanza procesos."""

from typing import Any, Dict, Optional

import requests

from audio_source import settings
from audio_source.errors import (
    NoResultsFound,
    ProviderError,
    RequestTimeoutError,
    ValidationError,
)
from audio_source.filters import NO_FILTER, FilterSpec
from audio_source.metadata import TrackDescriptor, TrackSource

_STATUS_ERRORS = {
    400: ValidationError,
    404: NoResultsFound,
    504: RequestTimeoutError,
}


class AudioSourceClient:
    def __init__(self, base_url: str, timeout: float = settings.REQUEST_TIMEOUT) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    def _raise_for_status(self, response: requests.Response) -> None:
        if response.ok:
            return
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = None
        message = str(detail or response.text or f"HTTP {response.status_code}")
        error_class = _STATUS_ERRORS.get(response.status_code, ProviderError)
        raise error_class(message)

    def get_track_info(self, query: str) -> TrackDescriptor:
        try:
            response = self.session.get(
                f"{self.base_url}/metadata", params={"query": query}, timeout=self.timeout
            )
        except requests.Timeout as exc:
            raise RequestTimeoutError("El servicio de audio no respondió a tiempo") from exc
        except requests.RequestException as exc:
            raise ProviderError(f"No se pudo contactar con el servicio de audio: {exc}") from exc
        self._raise_for_status(response)
        payload: Dict[str, Any] = response.json()
        try:
            source = TrackSource(payload.get("source") or TrackSource.OTHER.value)
        except ValueError:
            source = TrackSource.OTHER
        return TrackDescriptor.from_dict(
            {
                "title": payload.get("title"),
                "url": payload.get("url"),
                "duration_seconds": payload.get("durationSec"),
                "thumbnail_url": payload.get("thumbnail"),
                "author": payload.get("uploader"),
                "source": source.value,
            }
        )

    def stream_url(
        self,
        query: str,
        *,
        start: int = 0,
        filter_spec: FilterSpec = NO_FILTER,
        output_format: Optional[str] = None,
    ) -> str:
        """URL de /stream que un reproductor externo (ffmpeg) puede abrir directamente."""
        params: Dict[str, Any] = {"query": query}
        if start:
            params["start"] = start
        if not filter_spec.is_noop:
            params["filter"] = str(filter_spec)
        if output_format:
            params["format"] = output_format
        request = requests.Request("GET", f"{self.base_url}/stream", params=params).prepare()
        return str(request.url)

    def health(self) -> Dict[str, Any]:
        try:
            response = self.session.get(f"{self.base_url}/health", timeout=self.timeout)
        except requests.RequestException as exc:
            raise ProviderError(f"No se pudo contactar con el servicio de audio: {exc}") from exc
        # 503 sigue trayendo el detalle de dependencias.
        if response.status_code not in (200, 503):
            self._raise_for_status(response)
        return response.json()
