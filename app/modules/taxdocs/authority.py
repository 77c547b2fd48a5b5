"""
Cliente HTTP de la API de documentos tributarios (OpenFactura)

Sin reintentos automáticos: una emisión duplicada ante la autoridad es peor
que una emisión que debe reenviarse a mano. Todos los errores de transporte
(timeout, conexión, 5xx, 429, JSON inválido) se normalizan a
UpstreamTransportError.
"""
from datetime import date
from typing import Any, Dict, Optional
import base64
import logging
from urllib.parse import urlparse

import requests

from app.core.config import settings
from app.modules.taxdocs.exceptions import UpstreamTransportError, UpstreamRejected

logger = logging.getLogger(__name__)

DOCUMENT_ENDPOINT = "/v2/dte/document"
RECEIVED_ENDPOINT = "/v2/dte/document/received"
ACKNOWLEDGE_ENDPOINT = "/v2/dte/document/received/acknowledge"
TAXPAYER_ENDPOINT = "/v2/dte/taxpayer"


class TaxAuthorityClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None
    ):
        self.api_key = api_key if api_key is not None else settings.OPENFACTURA_API_KEY
        self.base_url = (base_url or settings.OPENFACTURA_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.OPENFACTURA_TIMEOUT_SECONDS
        self.session = session or requests.Session()
        self.session.headers.update({
            "apikey": self.api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        })

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}{path}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = self._url(path)
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            logger.error(f"Timeout llamando {method} {url}", exc_info=True)
            raise UpstreamTransportError(f"Timeout llamando a la autoridad: {e}", url=url)
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Error de conexión llamando {method} {url}", exc_info=True)
            raise UpstreamTransportError(f"Error de conexión con la autoridad: {e}", url=url)
        except requests.exceptions.RequestException as e:
            logger.error(f"Error HTTP llamando {method} {url}", exc_info=True)
            raise UpstreamTransportError(f"Error llamando a la autoridad: {e}", url=url)

        if response.status_code == 429 or response.status_code >= 500:
            logger.error(f"{method} {url} respondió HTTP {response.status_code}: {response.text[:300]}")
            raise UpstreamTransportError(
                f"La autoridad respondió HTTP {response.status_code}",
                url=url,
                status_code=response.status_code
            )
        return response

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            raise UpstreamTransportError(
                "Respuesta JSON inválida de la autoridad",
                status_code=response.status_code,
                body=response.text[:300]
            )

    @staticmethod
    def _body(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text[:2000]}

    # ===== Emisión =====

    def submit_document(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Envía un DTE; HTTP 4xx con cuerpo es un rechazo explícito"""
        response = self._request("POST", DOCUMENT_ENDPOINT, json=payload)
        if 400 <= response.status_code < 500:
            body = self._body(response)
            logger.warning(f"Emisión rechazada HTTP {response.status_code}: {str(body)[:300]}")
            raise UpstreamRejected(
                f"La autoridad rechazó el documento (HTTP {response.status_code})",
                response=body,
                status_code=response.status_code
            )
        data = self._json(response)
        if not isinstance(data, dict):
            raise UpstreamTransportError("Respuesta de emisión con formato inesperado")
        return data

    # ===== Documentos recibidos =====

    def fetch_received_documents(
        self,
        page: int = 1,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        document_type: Optional[int] = None,
        counterparty_tax_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Obtiene una página del registro de documentos recibidos.

        Returns:
            {"data": [...], "current_page": int, "last_page": int, "total": int}
        """
        payload: Dict[str, Any] = {"Page": str(page)}
        if start_date or end_date:
            fch: Dict[str, str] = {}
            if start_date:
                fch["gte"] = start_date.isoformat()
            if end_date:
                fch["lte"] = end_date.isoformat()
            payload["FchEmis"] = fch
        if document_type:
            payload["TipoDTE"] = {"eq": str(document_type)}
        if counterparty_tax_id:
            payload["RUTEmisor"] = {"eq": str(counterparty_tax_id)}

        response = self._request("POST", RECEIVED_ENDPOINT, json=payload)
        if response.status_code >= 400:
            raise UpstreamTransportError(
                f"Error obteniendo documentos recibidos (HTTP {response.status_code})",
                status_code=response.status_code
            )

        data = self._json(response)
        if not isinstance(data, dict):
            raise UpstreamTransportError("Respuesta de documentos recibidos con formato inesperado")

        return {
            "data": data.get("data") or [],
            "current_page": int(data.get("current_page") or page),
            "last_page": int(data.get("last_page") or page),
            "total": int(data.get("total") or 0),
        }

    def acknowledge_document(self, emitter_tax_id: str, type_code: int, folio: str, code: str) -> Dict[str, Any]:
        """Registra un acuse (ACD, RCD, ERM, RFP, RFT) sobre un documento recibido"""
        payload = {
            "RUTEmisor": emitter_tax_id,
            "TipoDTE": int(type_code),
            "Folio": str(folio),
            "Accion": code,
        }
        response = self._request("POST", ACKNOWLEDGE_ENDPOINT, json=payload)
        if 400 <= response.status_code < 500:
            raise UpstreamRejected(
                f"La autoridad rechazó el acuse (HTTP {response.status_code})",
                response=self._body(response),
                status_code=response.status_code
            )
        data = self._json(response)
        return data if isinstance(data, dict) else {"result": data}

    # ===== Artefactos =====

    def fetch_document_artifact(self, emitter_tax_id: str, type_code: int, folio: str, fmt: str) -> Optional[bytes]:
        """
        Descarga el PDF o XML de un documento por (emisor, tipo, folio).

        Returns:
            Los bytes del artefacto, o None si la autoridad no lo tiene
        """
        path = f"{DOCUMENT_ENDPOINT}/{emitter_tax_id}/{type_code}/{folio}/{fmt}"
        response = self._request("GET", path)
        if response.status_code >= 400:
            logger.info(f"Artefacto {fmt} no disponible para {emitter_tax_id}/{type_code}/{folio} (HTTP {response.status_code})")
            return None

        content_type = (response.headers.get("Content-Type") or "").lower()
        if "json" not in content_type:
            return response.content or None

        # La API entrega el archivo en base64 dentro de un JSON
        data = self._json(response)
        encoded = data.get(fmt) if isinstance(data, dict) else None
        if not encoded:
            return None
        try:
            return base64.b64decode(encoded)
        except (ValueError, TypeError):
            raise UpstreamTransportError(f"Artefacto {fmt} con base64 inválido")

    def _is_authority_url(self, url: str) -> bool:
        return urlparse(url).netloc.lower() == urlparse(self.base_url).netloc.lower()

    def download(self, url: str) -> Optional[bytes]:
        """
        Descarga una URL de artefacto previamente guardada.

        La apikey solo viaja a la API de la autoridad; las URLs de otros
        hosts (CDN, almacenamiento) se piden sin ella.
        """
        headers = None if self._is_authority_url(self._url(url)) else {"apikey": None}
        response = self._request("GET", url, headers=headers)
        if response.status_code >= 400:
            return None
        return response.content or None

    # ===== Salud =====

    def get_taxpayer(self, tax_id: str) -> Dict[str, Any]:
        response = self._request("GET", f"{TAXPAYER_ENDPOINT}/{tax_id}")
        if response.status_code >= 400:
            raise UpstreamTransportError(
                f"Consulta de contribuyente falló (HTTP {response.status_code})",
                status_code=response.status_code
            )
        data = self._json(response)
        return data if isinstance(data, dict) else {"result": data}

    def close(self) -> None:
        self.session.close()
