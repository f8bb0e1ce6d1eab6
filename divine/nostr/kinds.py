"""Event kinds used by diVine. Values must match the wider Nostr ecosystem exactly."""

TEXT_NOTE = 1
CONTACTS = 3
DELETION = 5  # NIP-09
REPOST = 6
REACTION = 7
GENERIC_REPOST = 16
ACCOUNT_DELETION = 62  # NIP-62 request to vanish
COMMENT = 1111  # NIP-22
MUTE_LIST = 10000
VIDEO_VIEW = 22236  # ephemeral, app specific
HTTP_AUTH = 27235  # NIP-98
CURATION_SET = 30005  # NIP-51 video curation set
LEGACY_VIDEO = 32222  # deprecated, still indexed for old clients
VIDEO = 34236  # NIP-71 addressable short video
TEXT_TRACK = 39307

VIDEO_KINDS = (VIDEO, LEGACY_VIDEO)


def is_replaceable(kind: int) -> bool:
    return kind in (0, CONTACTS) or 10000 <= kind < 20000


def is_ephemeral(kind: int) -> bool:
    return 20000 <= kind < 30000


def is_addressable(kind: int) -> bool:
    return 30000 <= kind < 40000


def is_video(kind: int) -> bool:
    return kind in VIDEO_KINDS
