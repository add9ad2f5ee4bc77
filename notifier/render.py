import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from db.models import FollowerState, FollowerStateReason

SLACK_LINK = re.compile(r'<[^|>]+\|([^>]+)>')

PROFILE_BASE_URL = 'https://twitter.com'

HEADERS = {
    FollowerState.NEW: 'New follower',
    FollowerState.LOST: 'Lost follower',
}


@dataclass
class RenderedMessage:
    header: str
    text: str
    footer: str
    image_url: Optional[str] = None

    def as_plain_text(self) -> str:
        text = SLACK_LINK.sub(r'\1', self.text)
        return f'{self.header}\n\n{text}\n\n{self.footer}'


def slack_link(handle: str) -> str:
    return f'<{PROFILE_BASE_URL}/{handle}|@{handle}>'

def large_profile_image(url: str) -> str:
    return url.replace('_normal.', '_400x400.', 1)


def render_follower_event(event: Dict[str, Any], user_handle: str) -> RenderedMessage:
    follower = event.get('follower') or {}
    state = FollowerState(event['followerState'])
    reason = FollowerStateReason(event['followerStateReason'])
    name = follower.get('name') or ''
    handle = follower.get('handle') or ''

    if reason == FollowerStateReason.FOLLOWED:
        text = f'{name} ({slack_link(handle)}) followed you :tada:'
    elif reason == FollowerStateReason.UNFOLLOWED:
        text = f'{name} ({slack_link(handle)}) unfollowed you'
    elif reason == FollowerStateReason.DELETED:
        text = f'User with ID {follower.get("id")} was deleted'
    else:
        text = f'User with ID {follower.get("id")} was suspended'

    details = []
    if follower.get('bio'):
        details.append(f'*Bio:* {follower["bio"]}')
    if follower.get('location'):
        details.append(f'*Location:* {follower["location"]}')
    # Deleted and suspended accounts come back without a name
    if name:
        details.append(f'*Followers:* {int(follower.get("totalFollowers") or 0):,}')
    if details:
        text += '\n\n' + '\n\n'.join(details)

    footer = f'You (@{user_handle}) now have {int(event.get("totalFollowers") or 0):,} Twitter followers'
    image = follower.get('profileImageUrl')
    return RenderedMessage(
        header=HEADERS[state],
        text=text,
        footer=footer,
        image_url=large_profile_image(image) if image else None,
    )


def to_slack_payload(message: RenderedMessage, channel: Optional[str] = None, username: Optional[str] = None,
                     icon_url: Optional[str] = None) -> Dict[str, Any]:
    section: Dict[str, Any] = {'type': 'section', 'text': {'type': 'mrkdwn', 'text': message.text}}
    if message.image_url:
        section['accessory'] = {'type': 'image', 'image_url': message.image_url, 'alt_text': 'profile image'}

    payload: Dict[str, Any] = {
        'text': f'{message.header}: {message.text}',
        'blocks': [
            {'type': 'header', 'text': {'type': 'plain_text', 'text': message.header}},
            section,
            {'type': 'context', 'elements': [{'type': 'mrkdwn', 'text': message.footer}]},
        ],
    }
    if username:
        payload['username'] = username
    if icon_url:
        payload['icon_url'] = icon_url
    if channel:
        payload['channel'] = channel
    return payload
