from __future__ import annotations

import html
from dataclasses import dataclass
from urllib.parse import urlencode

WELCOME_SUBJECT = "Welcome to Race Alert!"


@dataclass(frozen=True)
class EmailContent:
    subject: str
    html: str
    text: str


def unsubscribe_url(site_url: str, recipient: str | None = None) -> str:
    base = f"{site_url.rstrip('/')}/unsubscribe"
    if not recipient:
        return base
    return f"{base}?{urlencode({'email': recipient})}"


def registration_open_subject(race_name: str) -> str:
    return f"Registration just opened: {race_name}"


def registration_open_email(
    race_name: str,
    race_url: str,
    site_url: str,
    recipient: str | None = None,
) -> EmailContent:
    name = html.escape(race_name)
    url = html.escape(race_url, quote=True)
    site = html.escape(site_url, quote=True)
    leave = unsubscribe_url(site_url, recipient)
    body = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
  <h1 style="color: #2563eb; font-size: 24px;">Registration Alert: {name}</h1>
  <div style="background-color: #f0f9ff; border-left: 4px solid #2563eb; padding: 20px; margin-bottom: 20px;">
    <h2 style="color: #1e40af; margin-top: 0;">Registration is now OPEN!</h2>
    <p style="font-size: 16px;">Registration for <strong>{name}</strong> just opened.</p>
    <p style="font-size: 16px; margin-bottom: 0;">Popular races fill up fast.</p>
  </div>
  <div style="text-align: center; margin: 30px 0;">
    <a href="{url}" style="background-color: #2563eb; color: white; padding: 15px 30px; text-decoration: none; border-radius: 6px; font-weight: bold;">Register Now</a>
  </div>
  <div style="border-top: 1px solid #e5e7eb; padding-top: 20px; color: #6b7280; font-size: 14px;">
    <p>You're receiving this email because you signed up for race registration alerts at <a href="{site}">Race Alert</a>.</p>
    <p><a href="{html.escape(leave, quote=True)}" style="color: #6b7280;">Unsubscribe</a></p>
  </div>
</div>
""".strip()
    text = (
        f"Registration Alert: {race_name}\n\n"
        "Registration is now OPEN!\n\n"
        f"Registration for {race_name} just opened.\n"
        "Popular races fill up fast.\n\n"
        f"Register now: {race_url}\n\n"
        f"Unsubscribe: {leave}\n"
    )
    return EmailContent(subject=registration_open_subject(race_name), html=body, text=text)


def welcome_email(recipient: str, race_count: int, site_url: str) -> EmailContent:
    races = "1 race" if race_count == 1 else f"{race_count} races"
    site = html.escape(site_url, quote=True)
    leave = unsubscribe_url(site_url, recipient)
    body = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
  <h1 style="color: #2563eb; font-size: 24px;">Welcome to Race Alert!</h1>
  <p style="font-size: 16px;">Thanks for signing up! You're now subscribed to instant notifications for <strong>{races}</strong>.</p>
  <div style="background-color: #fef3c7; border-left: 4px solid #f59e0b; padding: 15px; margin-bottom: 20px;">
    <p style="margin: 0; color: #92400e;"><strong>Pro tip:</strong> register as soon as an alert arrives. Popular races can sell out within hours.</p>
  </div>
  <p style="font-size: 16px;">We'll only email you when registration opens.</p>
  <div style="border-top: 1px solid #e5e7eb; padding-top: 20px; color: #6b7280; font-size: 14px;">
    <p><a href="{html.escape(leave, quote=True)}" style="color: #6b7280;">Unsubscribe</a> &middot; <a href="{site}" style="color: #6b7280;">Update Preferences</a></p>
  </div>
</div>
""".strip()
    text = (
        "Welcome to Race Alert!\n\n"
        f"Thanks for signing up! You're now subscribed to instant notifications for {races}.\n\n"
        "Pro tip: register as soon as an alert arrives. Popular races can sell out within hours.\n\n"
        "We'll only email you when registration opens.\n\n"
        f"Unsubscribe: {leave}\n"
    )
    return EmailContent(subject=WELCOME_SUBJECT, html=body, text=text)
