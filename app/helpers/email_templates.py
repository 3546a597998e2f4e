from datetime import tzinfo

from jinja2 import Environment, FileSystemLoader, select_autoescape
from pydantic import BaseModel

from app.helpers.instants import duration_min, format_date_time, format_time
from app.helpers.resources import resources_dir
from app.models.block import QuietBlockGetModel

# Jinja configuration
_jinja = Environment(
    auto_reload=False,  # Disable auto-reload for performance
    autoescape=select_autoescape(enabled_extensions=("html.jinja",)),
    enable_async=True,
    loader=FileSystemLoader(resources_dir("email")),
)


class RenderedEmail(BaseModel, frozen=True):
    html: str
    subject: str
    text: str


def reminder_subject(
    block: QuietBlockGetModel,
    tz: tzinfo,
    late: bool = False,
) -> str:
    """
    Build the reminder subject, like `🤫 Quiet Hours: "Maths" starting at 9:05 PM`.
    """
    verb = "started" if late else "starting"
    return f'🤫 Quiet Hours: "{block.description}" {verb} at {format_time(block.start, tz)}'


async def render_reminder(
    block: QuietBlockGetModel,
    lookahead_min: int,
    sender_name: str,
    tz: tzinfo,
    late: bool = False,
) -> RenderedEmail:
    """
    Render the reminder email of a block, in both HTML and plain text.

    Instants are formatted in the display timezone `tz`. A late reminder tells the user the session has already started.
    """
    context = {
        "description": block.description,
        "duration": duration_min(block.start, block.end),
        "late": late,
        "lookahead_min": lookahead_min,
        "sender_name": sender_name,
        "start_hour": format_time(block.start, tz),
        "start_time": format_date_time(block.start, tz),
    }
    html = await _jinja.get_template("reminder.html.jinja").render_async(**context)
    text = await _jinja.get_template("reminder.txt.jinja").render_async(**context)
    return RenderedEmail(
        html=html,
        subject=reminder_subject(block=block, late=late, tz=tz),
        text=text.strip(),
    )
