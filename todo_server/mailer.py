"""Outgoing mail: verification and list-invite messages.

Messages are rendered from jinja2 templates under templates/email/ and sent
through the Resend HTTP API. Delivery problems are logged and reported as a
False return value; they never abort the calling request.
"""
import logging
import os
from typing import Any, Optional
from urllib.parse import urlencode

import httpx
from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape

from . import config

logger = logging.getLogger(__name__)

TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), 'templates', 'email')

_env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(['html']),
)


def _subject(template: str, params: dict[str, Any]) -> str:
    if template == 'invite':
        return f'{params.get("inviter_name", "Someone")} invited you to collaborate on "{params.get("list_name", "a list")}"'
    if template == 'verification':
        return 'Verify your Todo account'
    return 'Message from Todo'


def verify_url(email: str, code: str, invite: bool = False) -> str:
    query = {'code': code, 'email': email}
    if invite:
        query['invite'] = 'true'
    return f'{config.base_url()}/verify-email?{urlencode(query)}'


def render(template: str, params: dict[str, Any]) -> tuple[str, str]:
    """Return (subject, html) for a named template."""
    html = _env.get_template(f'{template}.html').render(**params)
    return _subject(template, params), html


async def deliver(payload: dict[str, Any], client: Optional[httpx.AsyncClient] = None) -> bool:
    if not config.RESEND_API_KEY:
        logger.info('mail not sent to %s: RESEND_API_KEY is not configured', payload.get('to'))
        return False
    headers = {'Authorization': f'Bearer {config.RESEND_API_KEY}'}
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=10.0)
    try:
        resp = await client.post(config.RESEND_API_URL, json=payload, headers=headers)
    except httpx.HTTPError as e:
        logger.warning('mail delivery to %s failed: %s', payload.get('to'), e)
        return False
    finally:
        if owns_client:
            await client.aclose()
    if resp.status_code >= 400:
        logger.warning('mail delivery to %s rejected: status=%s', payload.get('to'), resp.status_code)
        return False
    return True


async def send_mail(to: str, template: str, params: dict[str, Any]) -> bool:
    try:
        subject, html = render(template, params)
    except TemplateNotFound:
        logger.error('unknown mail template %r', template)
        return False
    ok = await deliver({'from': config.MAIL_FROM, 'to': to, 'subject': subject, 'html': html})
    if ok:
        logger.info('sent %s mail to %s', template, to)
    return ok


async def send_verification_email(email: str, display_name: str, code: str) -> bool:
    return await send_mail(email, 'verification', {
        'display_name': display_name,
        'code': code,
        'verify_url': verify_url(email, code),
    })


async def send_invite_email(email: str, inviter_name: str, list_name: str, list_color: str, code: str, message: Optional[str] = None) -> bool:
    return await send_mail(email, 'invite', {
        'inviter_name': inviter_name,
        'list_name': list_name,
        'list_color': list_color or config.DEFAULT_LIST_COLOR,
        'code': code,
        'message': message or '',
        'accept_url': verify_url(email, code, invite=True),
    })
