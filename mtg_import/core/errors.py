"""
Gerarchia delle eccezioni dell'importer.

Errori upstream (Scryfall): NotFoundError non si ritenta, TransientUpstreamError si'.
Errori di ciclo di vita dei job: sottoclassi di ValueError, come il resto dei service
che segnalano richieste non valide al router.
"""


class ImportAppError(Exception):
    """Base per tutti gli errori applicativi."""


class UpstreamApiError(ImportAppError):
    """Errore restituito (o causato) dall'API del catalogo upstream."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        code: str | None = None,
        url: str | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.code = code
        self.url = url


class NotFoundError(UpstreamApiError):
    """404 upstream: la risorsa non esiste, nessun retry."""


class TransientUpstreamError(UpstreamApiError):
    """429 / 5xx / errore di rete: ritentabile con backoff."""

    def __init__(self, message: str, retry_after: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class CircuitOpenError(ImportAppError):
    """Il circuit breaker e' aperto: chiamata rifiutata senza tentare la rete."""

    def __init__(self, retry_in: float):
        super().__init__(f"Circuit breaker is open, retry in {retry_in:.1f}s")
        self.retry_in = retry_in


class DownstreamApiError(ImportAppError):
    """Errore del catalogo downstream (Saleor) a livello di intera chiamata."""


# --- Ciclo di vita dei job ---


class JobNotFoundError(ValueError):
    pass


class JobConflictError(ValueError):
    """Esiste gia' un job pending/running per lo stesso tenant, tipo e set."""


class JobStateError(ValueError):
    """Operazione non consentita nello stato attuale del job."""


class InvalidJobRequestError(ValueError):
    pass


class ImportPreconditionError(ValueError):
    """Il catalogo downstream non e' configurato per ricevere l'import (canali, product type...)."""


class UpstreamUnavailableError(ValueError):
    """Il catalogo upstream non risponde (5xx, rete, circuit breaker): la richiesta va ripetuta."""
