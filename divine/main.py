import argparse
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from divine.auth.nip98 import Nip98AuthService
from divine.auth.service import AuthError, AuthService
from divine.config import Settings, settings as default_settings
from divine.nostr.relay_client import RelayClient
from divine.services.account_deletion import AccountDeletionService
from divine.services.content_blocklist import ContentBlocklistService
from divine.services.curation import CurationService
from divine.services.engagement import EngagementService
from divine.services.notifications import NotificationService
from divine.services.publish import AuthenticatedPublisher
from divine.services.relay_notifications import RelayNotificationApiService
from divine.services.video_events import VideoEventPublisher, VideoEventService
from divine.services.view_events import ViewEventPublisher

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    relay_client: RelayClient
    auth: AuthService
    nip98: Nip98AuthService
    publisher: AuthenticatedPublisher
    account_deletion: AccountDeletionService
    curation: CurationService
    view_events: ViewEventPublisher
    video_events: VideoEventService
    video_event_publisher: VideoEventPublisher
    notifications: NotificationService
    relay_notifications: RelayNotificationApiService
    blocklist: ContentBlocklistService
    engagement: EngagementService


def build_auth(config: Settings) -> AuthService:
    auth = AuthService(nip46_default_relay=config.nip46_default_relay)
    try:
        if config.nostr_secret:
            auth.login_with_secret(config.nostr_secret)
        elif config.bunker_uri:
            auth.login_with_bunker(config.bunker_uri)
    except AuthError as exc:
        logger.warning("Could not restore identity from configuration: %s", exc)
    return auth


def build_container(config: Optional[Settings] = None, auth: Optional[AuthService] = None) -> Container:
    """Wire every service explicitly; nothing here is a module-level singleton."""

    config = config or default_settings
    relay_client = RelayClient(config.relay_urls, timeout_seconds=config.publish_timeout_seconds)
    auth = auth or build_auth(config)
    publisher = AuthenticatedPublisher(auth, relay_client, timeout_seconds=config.publish_timeout_seconds)
    nip98 = Nip98AuthService(auth, token_ttl_seconds=config.nip98_token_ttl_seconds)
    video_events = VideoEventService()
    return Container(
        settings=config,
        relay_client=relay_client,
        auth=auth,
        nip98=nip98,
        publisher=publisher,
        account_deletion=AccountDeletionService(auth, relay_client, publisher),
        curation=CurationService(
            relay_client,
            publisher,
            publish_timeout_seconds=config.publish_timeout_seconds,
            refresh_timeout_seconds=config.query_timeout_seconds,
            client_name=config.client_tag,
        ),
        view_events=ViewEventPublisher(relay_client, publisher, default_relay_hint=config.default_relay_hint),
        video_events=video_events,
        video_event_publisher=VideoEventPublisher(relay_client, publisher, video_events),
        notifications=NotificationService(auth, relay_client, videos=video_events),
        relay_notifications=RelayNotificationApiService(
            config.notifications_api_url, nip98, timeout_seconds=config.http_timeout_seconds
        ),
        blocklist=ContentBlocklistService(),
        engagement=EngagementService(publisher, relay_client),
    )


async def cmd_whoami(container: Container, _args: argparse.Namespace) -> int:
    session = container.auth.session
    if session is None:
        print("Not authenticated")
        return 1
    print(f"{session.npub or session.pubkey_hex} ({session.session_mode.value})")
    return 0


async def cmd_notifications(container: Container, args: argparse.Namespace) -> int:
    pubkey = container.auth.current_public_key_hex or ""
    response = await container.relay_notifications.get_notifications(
        pubkey,
        types=args.types.split(",") if args.types else None,
        unread_only=args.unread,
        limit=args.limit,
        before=args.before,
    )
    for item in response.notifications:
        marker = " " if item.read else "*"
        print(f"{marker} {item.created_at:%Y-%m-%d %H:%M} {item.notification_type:<10} {item.source_pubkey[:12]} {item.id}")
    print(f"{response.unread_count} unread")
    if response.has_more and response.next_cursor:
        print(f"More: --before {response.next_cursor}")
    return 0


async def cmd_mark_read(container: Container, args: argparse.Namespace) -> int:
    pubkey = container.auth.current_public_key_hex or ""
    result = await container.relay_notifications.mark_as_read(pubkey, args.ids or None)
    if not result.success:
        print(f"Failed: {result.error}")
        return 1
    print(f"Marked {result.marked_count} notifications as read")
    return 0


async def cmd_delete_account(container: Container, args: argparse.Namespace) -> int:
    if not args.yes:
        print("Refusing to delete without --yes")
        return 2
    result = await container.account_deletion.delete_account(args.reason)
    if not result.success:
        print(f"Deletion failed: {result.error}")
        return 1
    print(f"Deletion requested; {result.deleted_events_count} events removed")
    return 0


async def cmd_curate(container: Container, args: argparse.Namespace) -> int:
    result = await container.curation.publish_curation(
        args.id, args.title, args.videos, description=args.description, image_url=args.image
    )
    if not result.success:
        print(f"Publish failed: {result.errors}")
        return 1
    print(f"Published {result.event_id} to {result.success_count}/{result.total_relays} relays")
    return 0


COMMANDS = {
    "whoami": cmd_whoami,
    "notifications": cmd_notifications,
    "mark-read": cmd_mark_read,
    "delete-account": cmd_delete_account,
    "curate": cmd_curate,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="divine", description="diVine account and publishing tools.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("whoami", help="Show the configured identity.")

    notes = subparsers.add_parser("notifications", help="List notifications from the relay API.")
    notes.add_argument("--limit", type=int, default=50)
    notes.add_argument("--types", help="Comma separated notification types.")
    notes.add_argument("--unread", action="store_true", help="Only unread notifications.")
    notes.add_argument("--before", help="Pagination cursor.")

    mark = subparsers.add_parser("mark-read", help="Mark notifications as read (all when no ids given).")
    mark.add_argument("ids", nargs="*")

    delete = subparsers.add_parser("delete-account", help="Delete every event and request account removal.")
    delete.add_argument("--yes", action="store_true", help="Confirm the irreversible deletion.")
    delete.add_argument("--reason", default="User requested account deletion via diVine app")

    curate = subparsers.add_parser("curate", help="Publish a video curation set.")
    curate.add_argument("id")
    curate.add_argument("title")
    curate.add_argument("videos", nargs="*")
    curate.add_argument("--description")
    curate.add_argument("--image")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if default_settings.debug else default_settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    container = build_container()
    handler = COMMANDS[args.command]
    return asyncio.run(handler(container, args))


if __name__ == "__main__":
    raise SystemExit(main())
