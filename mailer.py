"""
Outbound alert mail for the Hotel Operations App.

Builds the missing-items and low-stock messages and sends them over SMTP.
Delivery bookkeeping (the notifications outbox) lives in app.py.
"""
import smtplib
from email.message import EmailMessage

from markupsafe import escape

import hotel_utils


def missing_items_email(room, checklist_date, missing_keys):
    """Message listing only the checklist items marked "no"."""
    labels = [hotel_utils.humanize_key(key) for key in missing_keys]
    subject = (f"Urgent: Missing Items in Room {hotel_utils.single_line(room)} "
               f"on {hotel_utils.single_line(checklist_date)}")

    text_lines = [f"Room {room} on {checklist_date} is missing:"]
    text_lines += [f"- {label}" for label in labels]
    text_lines += ["", "Please address this immediately."]

    html_items = "".join(f"<li>{escape(label)}</li>" for label in labels)
    html = (
        f"<p>Room <strong>{escape(room)}</strong> on <strong>{escape(checklist_date)}</strong> is missing:</p>"
        f"<ul>{html_items}</ul>"
        "<p>Please address this immediately.</p>"
    )
    return {"subject": subject, "text": "\n".join(text_lines), "html": html}


def low_stock_email(item, quantity, low_stock_level):
    subject = f"LOW STOCK ALERT: {hotel_utils.single_line(item)}"
    text = (
        f"Urgent Low Stock Alert!\n\n"
        f"The inventory for {item} is critically low. There are only {quantity} units remaining. "
        f"The low stock level for this item is {low_stock_level}.\n\n"
        "Please reorder this item as soon as possible."
    )
    html = (
        "<p><strong>Urgent Low Stock Alert!</strong></p>"
        f"<p>The inventory for <strong>{escape(item)}</strong> is critically low. "
        f"There are only <strong>{quantity}</strong> units remaining. "
        f"The low stock level for this item is {low_stock_level}.</p>"
        "<p>Please reorder this item as soon as possible.</p>"
    )
    return {"subject": subject, "text": text, "html": html}


def send_email(recipient, subject, text, html, *, host, port, sender,
               username=None, password=None, use_tls=True, timeout=10):
    """
    Send one multipart (text + HTML) message.

    Raises smtplib.SMTPException or OSError on failure; callers decide what to
    do with it.
    """
    msg = EmailMessage()
    # Header values cannot carry line breaks
    msg["Subject"] = hotel_utils.single_line(subject)
    msg["From"] = sender
    msg["To"] = recipient
    msg.set_content(text)
    if html:
        msg.add_alternative(html, subtype="html")

    with smtplib.SMTP(host, port, timeout=timeout) as smtp:
        if use_tls:
            smtp.starttls()
        if username and password:
            smtp.login(username, password)
        smtp.send_message(msg)
