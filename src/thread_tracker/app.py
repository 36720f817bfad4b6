"""Slack Bolt application publishing the update summary to App Home."""

import os
import logging
from typing import Optional

from dotenv import load_dotenv
from slack_bolt import App
from slack_bolt.adapter.socket_mode import SocketModeHandler

from thread_tracker.blocks import build_summary_blocks, build_thread_modal
from thread_tracker.config import build_persistence, load_config
from thread_tracker.service import EntryService

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# Initialize Slack app
app = App(token=os.environ.get("SLACK_BOT_TOKEN"))

_service: Optional[EntryService] = None


def _current_service() -> EntryService:
    """Return the process-wide service, reloaded so other writers show up."""

    global _service
    if _service is None:
        _service = EntryService(build_persistence(load_config()))
    else:
        _service.reload()
    return _service


def _summary_view() -> dict:
    """Load the current tracker state and build the App Home view."""

    service = _current_service()
    return {
        "type": "home",
        "blocks": build_summary_blocks(service.roots(), service.users),
    }


@app.event("app_home_opened")
def update_home_tab(client, event, logger):
    """Update the App Home tab when a user opens it."""
    try:
        user_id = event["user"]
        logger.info(f"Home tab opened by user {user_id}")
        client.views_publish(user_id=user_id, view=_summary_view())
        logger.info(f"Successfully updated home tab for user {user_id}")

    except Exception as e:
        logger.error(f"Error updating home tab: {e}", exc_info=True)


@app.action("refresh_updates")
def handle_refresh_button(ack, body, client, logger):
    """Republish the summary when the Refresh button is pressed."""
    ack()
    try:
        client.views_publish(user_id=body["user"]["id"], view=_summary_view())
    except Exception as e:
        logger.error(f"Error refreshing home tab: {e}", exc_info=True)


@app.action("view_thread")
def handle_view_thread(ack, body, client, logger):
    """Open the full thread behind a summary card in a modal."""
    ack()
    try:
        entry_id = body["actions"][0]["value"]
        service = _current_service()
        view = build_thread_modal(service.find_by_id(entry_id), service.users)
        client.views_open(trigger_id=body["trigger_id"], view=view)
    except Exception as e:
        logger.error(f"Error opening thread view: {e}", exc_info=True)


@app.command("/updates-refresh")
def handle_refresh_command(ack, respond, client, context):
    """Handle the /updates-refresh slash command."""
    ack()
    try:
        client.views_publish(user_id=context["user_id"], view=_summary_view())
        respond("Update summary refreshed!")
    except Exception as e:
        logger.error(f"Error in refresh command: {e}", exc_info=True)
        respond(f"Error refreshing update summary: {str(e)}")


def main():
    """Start the Slack app in Socket Mode."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app_token = os.environ.get("SLACK_APP_TOKEN")
    if not app_token:
        raise ValueError("SLACK_APP_TOKEN environment variable is required")

    bot_token = os.environ.get("SLACK_BOT_TOKEN")
    if not bot_token:
        raise ValueError("SLACK_BOT_TOKEN environment variable is required")

    logger.info("Starting thread tracker Slack app...")
    handler = SocketModeHandler(app, app_token)
    handler.start()


if __name__ == "__main__":
    main()
