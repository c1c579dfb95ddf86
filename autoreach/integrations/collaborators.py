"""
Autoreach - Collaborator Contracts
Abstract interfaces the orchestration calls into. Grading, analysis and
drafting implementations (LLM-backed or otherwise) live with the host app.
"""
from abc import ABC, abstractmethod
from typing import Any
from autoreach.models import GradeSuggestion, EmailDraft, EmailDraftResult


class Grader(ABC):
    """Suggests and records a customer grade."""

    @abstractmethod
    def suggest(self, customer_id: int) -> GradeSuggestion:
        ...

    @abstractmethod
    def confirm(self, customer_id: int, grade: str, reason: str) -> None:
        """Persist the final grade on the customer."""
        ...


class Analyst(ABC):

    @abstractmethod
    def generate(self, customer_id: int) -> Any:
        """Produce and store an analysis record for the customer."""
        ...


class EmailComposer(ABC):

    @abstractmethod
    def draft_initial(self, customer_id: int) -> EmailDraftResult:
        """Draft and store the initial outreach email. Returns its id."""
        ...

    @abstractmethod
    def draft_followup(self, customer_id: int, context_email_id: int) -> EmailDraft:
        """Draft follow-up content, using the context email as prior conversation."""
        ...


class Mailer(ABC):

    @abstractmethod
    def send(self, recipients: list[str], subject: str, body: str, timeout: float) -> str:
        """Deliver within `timeout` seconds. Returns the provider message id."""
        ...
