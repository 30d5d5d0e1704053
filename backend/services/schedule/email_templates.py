# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Email templates for schedule notifications.

Each render_* function returns an EmailContent(subject, html). User-provided
values (names, titles) are HTML-escaped.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from html import escape
from typing import Optional, Sequence

BRAND_NAME = "Refly.AI"

STYLES = {
    "body": "margin: 0; padding: 0; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, 'Helvetica Neue', Arial, sans-serif; background-color: #F4F6F8; line-height: 1.6; color: #1C2024;",
    "container": "width: 100%; max-width: 600px; margin: 0 auto; background-color: #ffffff; border-radius: 12px; border: 1px solid #E4E5E7; box-shadow: 0 4px 12px rgba(0, 0, 0, 0.05); overflow: hidden;",
    "content": "padding: 32px;",
    "greeting": "font-size: 18px; font-weight: 600; color: #1C2024; margin-bottom: 24px;",
    "paragraph": "font-size: 15px; color: #3A4248; margin-bottom: 16px; line-height: 1.6;",
    "list": "font-size: 15px; color: #3A4248; margin-bottom: 24px; padding-left: 20px;",
    "list_item": "margin-bottom: 8px;",
    "section_title": "font-size: 14px; font-weight: 600; text-transform: uppercase; color: #6C7278; letter-spacing: 0.05em; margin-bottom: 12px; margin-top: 32px;",
    "card": "background-color: #F9FAFB; border: 1px solid #EFF1F3; border-radius: 8px; padding: 16px; margin-bottom: 24px;",
    "card_label": "font-size: 13px; color: #6C7278;",
    "card_value": "font-size: 13px; font-weight: 500; color: #1C2024; margin-left: auto;",
    "button_container": "margin-top: 32px; text-align: left;",
    "button": "display: inline-block; background-color: #0e9f77; color: #ffffff; padding: 12px 24px; border-radius: 6px; font-size: 14px; font-weight: 600; text-decoration: none;",
    "footer": "padding: 24px 32px; background-color: #F9FAFB; border-top: 1px solid #EFF1F3; text-align: center;",
    "footer_text": "font-size: 12px; color: #8C9196; margin-bottom: 8px;",
}

SUBJECT_LIMIT_EXCEEDED = "Your scheduled workflow has been paused"
SUBJECT_INSUFFICIENT_CREDITS = "Your scheduled workflow couldn’t run due to insufficient credits"
SUBJECT_SUCCESS = "Scheduled workflow Succeeded successfully"
SUBJECT_FAILED = "Scheduled workflow failed to run"


@dataclass(frozen=True)
class EmailContent:
    subject: str
    html: str


def _wrap(subject: str, content: str) -> str:
    year = datetime.now(timezone.utc).year
    return f"""
    <!DOCTYPE html>
    <html lang="en">
      <head>
        <meta charset="utf-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <title>{escape(subject)}</title>
      </head>
      <body style="{STYLES['body']}">
        <table role="presentation" style="width: 100%; border-collapse: collapse; background-color: #F4F6F8; padding: 40px 0;">
          <tr>
            <td align="center" style="padding: 40px 0;">
              <div style="{STYLES['container']}">
                <div style="{STYLES['content']}">
                  {content}
                </div>
                <div style="{STYLES['footer']}">
                  <p style="{STYLES['footer_text']}">The {BRAND_NAME} Team</p>
                  <p style="{STYLES['footer_text']}">&copy; {year} {BRAND_NAME}. All rights reserved.</p>
                </div>
              </div>
            </td>
          </tr>
        </table>
      </body>
    </html>
    """


def _card_row(label: str, value: str) -> str:
    return f"""
        <tr>
          <td style="{STYLES['card_label']}">{label}</td>
          <td align="right" style="{STYLES['card_value']}">{value}</td>
        </tr>"""


def _card(*rows: str) -> str:
    return f"""
    <div style="{STYLES['card']}">
      <table role="presentation" style="width: 100%;">{''.join(rows)}
      </table>
    </div>"""


def _button(link: str, label: str) -> str:
    return f"""
    <div style="{STYLES['button_container']}">
      <a href="{escape(link, quote=True)}" style="{STYLES['button']}">{label}</a>
    </div>"""


def _greeting(user_name: str) -> str:
    return f'<h1 style="{STYLES["greeting"]}">Hi {escape(user_name)},</h1>'


def _paragraph(text: str) -> str:
    return f'<p style="{STYLES["paragraph"]}">{text}</p>'


def render_limit_exceeded_email(
    user_name: str,
    schedule_names: Sequence[str],
    limit: int,
    current_count: int,
    schedules_link: str
) -> EmailContent:
    """
    One email summarizing every schedule paused by the quota enforcer.

    Args:
        user_name: Greeting name
        schedule_names: Names of the schedules that were disabled
        limit: Plan's active schedule limit
        current_count: Active schedules before enforcement
        schedules_link: Link to schedule management
    """
    names = [escape(name) for name in schedule_names] or ["Untitled Schedule"]
    if len(names) == 1:
        intro = (
            f"Your scheduled workflow <strong>“{names[0]}”</strong> has been temporarily paused "
            f"because you’ve reached the maximum number of active schedules allowed for your current plan."
        )
        affected = ""
    else:
        intro = (
            f"{len(names)} of your scheduled workflows have been temporarily paused because "
            f"you’ve reached the maximum number of active schedules allowed for your current plan."
        )
        items = "".join(f'<li style="{STYLES["list_item"]}">{name}</li>' for name in names)
        affected = f'<div style="{STYLES["section_title"]}">Paused schedules</div><ul style="{STYLES["list"]}">{items}</ul>'

    card = _card(
        _card_row("Your Plan Limit", f"{limit} active schedules"),
        _card_row("Current Active", f"{current_count} active schedules"),
    )
    content = f"""
    {_greeting(user_name)}
    {_paragraph(intro)}
    {card}
    {affected}
    {_paragraph("As a result, paused schedules have been stopped and will not run until the issue is resolved.")}
    <div style="{STYLES['section_title']}">What you can do</div>
    <ul style="{STYLES['list']}">
      <li style="{STYLES['list_item']}">Disable or delete an existing schedule to free up a slot</li>
      <li style="{STYLES['list_item']}">Upgrade your plan to unlock more scheduled workflows</li>
    </ul>
    {_button(schedules_link, "Manage My Schedules")}
    """
    return EmailContent(SUBJECT_LIMIT_EXCEEDED, _wrap(SUBJECT_LIMIT_EXCEEDED, content))


def render_insufficient_credits_email(
    user_name: str,
    schedule_name: str,
    schedules_link: str,
    current_balance: Optional[int] = None,
    next_run_time: Optional[str] = None
) -> EmailContent:
    """Balance and next-run rows are omitted when unknown."""
    rows = [_card_row("What happened", "The workflow requires credits to execute")]
    if current_balance is not None:
        rows.append(_card_row("Current Balance", f"{current_balance} credits"))
    if next_run_time:
        rows.append(_card_row("Next Scheduled Run", escape(next_run_time)))

    intro = (
        f"Your scheduled workflow <strong>“{escape(schedule_name)}”</strong> was unable to run "
        f"because your account doesn’t have enough credits."
    )
    content = f"""
    {_greeting(user_name)}
    {_paragraph(intro)}
    {_card(*rows)}
    {_paragraph("This schedule will not run until your credits are replenished. Once your credit balance is restored, the schedule will continue running as planned.")}
    {_button(schedules_link, "View Workflow")}
    """
    return EmailContent(SUBJECT_INSUFFICIENT_CREDITS, _wrap(SUBJECT_INSUFFICIENT_CREDITS, content))


def render_schedule_success_email(
    user_name: str,
    schedule_name: str,
    run_time: str,
    next_run_time: str,
    run_details_link: str
) -> EmailContent:
    intro = f"Great news! Your scheduled workflow <strong>“{escape(schedule_name)}”</strong> ran successfully."
    card = _card(
        _card_row("Status", '<span style="color: #12B76A;">Succeeded</span>'),
        _card_row("Run Time", escape(run_time)),
        _card_row("Next Run", escape(next_run_time)),
    )
    content = f"""
    {_greeting(user_name)}
    {_paragraph(intro)}
    {card}
    {_paragraph("You can view the full run details and results below.")}
    {_button(run_details_link, "View Run Details")}
    """
    return EmailContent(SUBJECT_SUCCESS, _wrap(SUBJECT_SUCCESS, content))


def render_schedule_failed_email(
    user_name: str,
    schedule_name: str,
    run_time: str,
    next_run_time: str,
    run_details_link: str
) -> EmailContent:
    intro = f"Your scheduled workflow <strong>“{escape(schedule_name)}”</strong> failed during its most recent run."
    card = _card(
        _card_row("Status", '<span style="color: #F04438;">Failed</span>'),
        _card_row("Run Time", escape(run_time)),
        _card_row("Next Run", escape(next_run_time)),
    )
    content = f"""
    {_greeting(user_name)}
    {_paragraph(intro)}
    {card}
    {_paragraph("The schedule itself is still active and will attempt to run again at the next scheduled time.")}
    {_button(run_details_link, "Troubleshoot Issue")}
    """
    return EmailContent(SUBJECT_FAILED, _wrap(SUBJECT_FAILED, content))
