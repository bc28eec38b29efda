"""
Service wiring.

Every service is constructed once at process start and handed to the HTTP
layer and the scheduler through a ServiceContainer stored on app.state.
Tests build a container with fakes instead.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from app.config import Settings
from app.database import create_db_engine, create_session_factory, init_db
from app.services.background_job import BackgroundJobRunner
from app.services.graph_service import GraphService
from app.services.gmail_service import GmailService
from app.services.invoice_extractor import InvoiceExtractor
from app.services.invoice_store import InvoiceStore
from app.services.mail_provider import MailProvider
from app.services.notification_service import DiscordNotifier
from app.services.oauth_providers import GoogleOAuthProvider, MicrosoftOAuthProvider, OAuthProvider
from app.services.sync_service import SyncService
from app.services.token_manager import TokenManager
from app.services.token_store import TokenStore

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: Engine
    token_store: TokenStore
    invoice_store: InvoiceStore
    oauth_provider: OAuthProvider
    token_manager: TokenManager
    mail_provider: MailProvider
    extractor: InvoiceExtractor
    notifier: DiscordNotifier
    sync_service: SyncService
    job_runner: BackgroundJobRunner

    def shutdown(self) -> None:
        """Stop the scheduler, flush queued notifications and close the pool."""
        self.job_runner.shutdown()
        self.notifier.shutdown()
        self.engine.dispose()


def build_oauth_provider(settings: Settings) -> OAuthProvider:
    if settings.mail_provider == "microsoft":
        return MicrosoftOAuthProvider(
            client_id=settings.azure_client_id,
            client_secret=settings.azure_client_secret,
            redirect_uri=settings.redirect_uri,
            authority=settings.azure_authority
        )
    return GoogleOAuthProvider(
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        redirect_uri=settings.redirect_uri
    )


def build_mail_provider(settings: Settings) -> MailProvider:
    if settings.mail_provider == "microsoft":
        return GraphService()
    return GmailService()


def build_container(
    settings: Settings,
    oauth_provider: Optional[OAuthProvider] = None,
    mail_provider: Optional[MailProvider] = None,
    extractor: Optional[InvoiceExtractor] = None,
    notifier: Optional[DiscordNotifier] = None,
    job_runner_kwargs: Optional[dict] = None
) -> ServiceContainer:
    """
    Construct all services for the given settings.

    Any external collaborator can be passed in to replace the real one.
    """
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)

    token_store = TokenStore(session_factory)
    invoice_store = InvoiceStore(session_factory)

    oauth_provider = oauth_provider or build_oauth_provider(settings)
    mail_provider = mail_provider or build_mail_provider(settings)
    extractor = extractor or InvoiceExtractor(settings.gemini_api_key, settings.gemini_model)
    notifier = notifier or DiscordNotifier(settings.discord_webhook_url, settings.frontend_url)

    token_manager = TokenManager(token_store, oauth_provider)
    sync_service = SyncService(
        token_manager=token_manager,
        mail_provider=mail_provider,
        extractor=extractor,
        store=invoice_store,
        folder_name=settings.mail_folder,
        notifier=notifier
    )
    job_runner = BackgroundJobRunner(
        sync_service=sync_service,
        store=invoice_store,
        cron_schedule=settings.background_job_cron,
        notifier=notifier,
        **(job_runner_kwargs or {})
    )

    logger.info("Services ready (provider=%s, folder=%s)", settings.mail_provider, settings.mail_folder)
    return ServiceContainer(
        settings=settings,
        engine=engine,
        token_store=token_store,
        invoice_store=invoice_store,
        oauth_provider=oauth_provider,
        token_manager=token_manager,
        mail_provider=mail_provider,
        extractor=extractor,
        notifier=notifier,
        sync_service=sync_service,
        job_runner=job_runner
    )
