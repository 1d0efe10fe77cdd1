import asyncio
import logging
from datetime import date, datetime, timezone, time as dtime
from typing import Awaitable, Callable

import discord
from discord.ext import commands, tasks

from .errors import ConfigurationError
from .google_stores import DriveBlobStore, SheetsRecordStore, load_google_credentials, verify_remote_targets
from .guild_store import GuildConfig, GuildStore
from .logging_setup import configure_logging, register_loop_exception_handler
from .reconciler import Outcome, SubmissionContext, SubmissionReconciler
from .records import SubmitterIdentity, format_duration
from .settings import Settings, load_settings
from .slots import next_reset_at, week_start
from .tickets import TicketRegistry, is_image_attachment, is_ticket_channel, ticket_channel_name
from .weekly_reset import ResetReport, WeeklyResetScheduler, is_reset_due

logger = logging.getLogger("shotbot")

# =========================
# CONFIG
# =========================
SHUTDOWN_ROLE_NAME = "Bot Shutdown"
OPEN_TICKET_BUTTON_ID = "create_ticket_button"
VIEW_SHEET_BUTTON_ID = "admin_view_sheet_button"
SUCCESS_EMOJI = "✅"
FAILURE_EMOJI = "❌"
# Thank-you + screenshot removal, then ticket channel removal
THANK_YOU_DELETE_SECONDS = 7
TICKET_CLOSE_DELAY_SECONDS = 5
ADMIN_CLOSE_DELAY_SECONDS = 2
PROMPT_REFRESH_MINUTES = 1
LAST_RESET_STATE_KEY = "last_weekly_reset"
# guild_state rows not tied to a single guild
GLOBAL_STATE_GUILD_ID = 0
# =========================
# MESSAGES
# =========================
PROMPT_BODY = (
    "**Welcome to the Screenshot Submission System!** 🗓️\n\n"
    "Click the \"🎟️ Open Ticket\" button below to create a private channel where you can submit "
    "your **daily activity screenshot**.\n\n"
    "**Submission Guidelines:**\n"
    "- You are expected to submit one (1) screenshot per day for 7 consecutive days.\n"
    "- Submissions are logged, and admins will verify them.\n"
    "- This system is used to track activity—each day you fail to submit (without informing an admin) "
    "may count as a strike.\n"
    "- Three (3) strikes and you're out of the guild.\n"
    "- The strike log resets weekly on Sunday at 00:00 UTC."
)
TICKET_GREETING = (
    "👋 Hello {member}, welcome to your ticket!\n\n"
    "🛡️ {admins} have access to this channel.\n\n"
    "🖼️ Please send in your **daily activity screenshot** here or describe any issues you have."
)
NOT_AN_IMAGE_REPLY = (
    "It looks like that wasn't a recognized image file. Please upload a screenshot in a common format "
    "(PNG, JPG, WEBP, GIF).\nIf you need other assistance, an admin will be with you shortly."
)
TEXT_ONLY_REPLY = (
    "Thanks for your message! An admin will be with you shortly to assist. "
    "If you meant to submit a screenshot, please send it as an image attachment."
)
# =========================
# DISCORD SETUP
# =========================
intents = discord.Intents.default()
intents.message_content = True  # needed to see attachments in ticket channels
intents.members = True  # needed for join dates and role checks
bot = commands.Bot(command_prefix="!", intents=intents)

settings: Settings | None = None
guild_store: GuildStore | None = None
reconciler: SubmissionReconciler | None = None
reset_scheduler: WeeklyResetScheduler | None = None
tickets = TicketRegistry()
background_tasks: set[asyncio.Task] = set()
startup_failed = False


def spawn(coro: Awaitable[None]) -> asyncio.Task:
    task = asyncio.create_task(coro)
    background_tasks.add(task)
    task.add_done_callback(background_tasks.discard)
    return task


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def prompt_content(now: datetime) -> str:
    countdown = format_duration(next_reset_at(now) - now)
    return f"{PROMPT_BODY}\n\n**Time until weekly reset:** {countdown}"


def resolve_targets(cfg: GuildConfig | None) -> tuple[str, str, str]:
    """(spreadsheet id, base sheet name, Drive folder id) for a guild."""
    return (
        (cfg.spreadsheet_id if cfg else None) or settings.spreadsheet_id,
        (cfg.sheet_name if cfg else None) or settings.sheet_name,
        (cfg.drive_folder_id if cfg else None) or settings.drive_folder_id,
    )


def spreadsheet_url(spreadsheet_id: str) -> str:
    return f"https://docs.google.com/spreadsheets/d/{spreadsheet_id}/edit"


# =========================
# EPHEMERAL REPLIES
# =========================
async def _delete_later(delete: Callable[[], Awaitable[object]], delay: float, what: str):
    await asyncio.sleep(delay)
    try:
        await delete()
    except discord.NotFound:
        pass  # already gone
    except discord.HTTPException:
        logger.warning("ephemeral_delete_failed what=%s", what)


async def reply_ephemeral(interaction: discord.Interaction, content: str, *, edit: bool = False):
    """Ephemeral reply that removes itself after EPHEMERAL_DELETE_SECONDS."""
    delay = settings.ephemeral_delete_seconds if settings else 10
    try:
        if edit:
            await interaction.edit_original_response(content=content)
        elif interaction.response.is_done():
            followup = await interaction.followup.send(content, ephemeral=True, wait=True)
            spawn(_delete_later(followup.delete, delay, "followup"))
            return
        else:
            await interaction.response.send_message(content, ephemeral=True)
    except (discord.Forbidden, discord.HTTPException):
        logger.exception("ephemeral_reply_failed interaction_id=%s", getattr(interaction, "id", None))
        return
    spawn(_delete_later(interaction.delete_original_response, delay, "original_response"))


def is_admin(member: discord.abc.User) -> bool:
    permissions = getattr(member, "guild_permissions", None)
    return bool(permissions and permissions.administrator)


# =========================
# TICKETS
# =========================
class TicketPromptView(discord.ui.View):
    def __init__(self):
        super().__init__(timeout=None)

    @discord.ui.button(label="🎟️ Open Ticket", style=discord.ButtonStyle.primary, custom_id=OPEN_TICKET_BUTTON_ID)
    async def open_ticket(self, button: discord.ui.Button, interaction: discord.Interaction):
        await open_ticket_for(interaction)

    @discord.ui.button(
        label="📊 View Activity Log (Admins)",
        style=discord.ButtonStyle.secondary,
        custom_id=VIEW_SHEET_BUTTON_ID,
    )
    async def view_sheet(self, button: discord.ui.Button, interaction: discord.Interaction):
        if not is_admin(interaction.user):
            await reply_ephemeral(interaction, "You do not have permission to use this button.")
            return
        spreadsheet_id, _, _ = resolve_targets(guild_store.get(interaction.guild.id))
        await reply_ephemeral(interaction, f"📊 **Activity Log Sheet:** <{spreadsheet_url(spreadsheet_id)}>")


async def delete_if_blank(channel_id: int):
    channel = bot.get_channel(channel_id)
    if channel is None:
        return
    async for message in channel.history(limit=50):
        if not message.author.bot:
            return
    logger.info("ticket_blank_deleted channel=%s channel_id=%s", channel.name, channel_id)
    await channel.delete(reason="Blank ticket auto-deleted")


async def open_ticket_for(interaction: discord.Interaction):
    guild = interaction.guild
    member = interaction.user
    cfg = guild_store.get(guild.id)
    if cfg is None or not cfg.ticket_category_id:
        await reply_ephemeral(interaction, "Ticket system not configured.")
        return
    if cfg.shutdown_role_id and member.get_role(cfg.shutdown_role_id):
        await reply_ephemeral(
            interaction,
            f"You have the \"{cfg.shutdown_role_name or 'shutdown'}\" role and cannot create tickets.",
        )
        return
    existing_id = tickets.channel_for(guild.id, member.id)
    if existing_id:
        existing = guild.get_channel(existing_id)
        if existing is not None:
            await reply_ephemeral(interaction, f"You already have an open ticket: {existing.mention}.")
            return
        tickets.close(guild.id, member.id)
    category = guild.get_channel(cfg.ticket_category_id)
    if not isinstance(category, discord.CategoryChannel):
        await reply_ephemeral(interaction, "Error: Ticket category not found.")
        return

    # a button defer defaults to editing the prompt message itself
    await interaction.response.defer(ephemeral=True, invisible=False)
    overwrites = {
        guild.default_role: discord.PermissionOverwrite(view_channel=False),
        member: discord.PermissionOverwrite(
            view_channel=True, send_messages=True, read_message_history=True, attach_files=True
        ),
        guild.me: discord.PermissionOverwrite(
            view_channel=True, send_messages=True, read_message_history=True, manage_channels=True
        ),
    }
    admin_roles = [role for role in (guild.get_role(rid) for rid in cfg.admin_role_ids) if role is not None]
    for role in admin_roles:
        overwrites[role] = discord.PermissionOverwrite(
            view_channel=True, send_messages=True, read_message_history=True, attach_files=True, manage_messages=True
        )
    try:
        channel = await guild.create_text_channel(
            ticket_channel_name(member.name, member.id, member.discriminator),
            category=category,
            overwrites=overwrites,
            topic=f"Ticket for {member} (ID: {member.id}). Created: {utcnow():%Y-%m-%d %H:%M} UTC",
        )
        admin_mentions = " ".join(role.mention for role in admin_roles) or "Administrators"
        await channel.send(TICKET_GREETING.format(member=member.mention, admins=admin_mentions))
    except (discord.Forbidden, discord.HTTPException):
        logger.exception("ticket_create_failed guild_id=%s user_id=%s", guild.id, member.id)
        await reply_ephemeral(interaction, "Error creating ticket. Ensure bot has permissions.", edit=True)
        return
    tickets.open(guild.id, member.id, channel.id)
    tickets.schedule_cleanup(channel.id, settings.blank_ticket_timeout_seconds, lambda: delete_if_blank(channel.id))
    logger.info("ticket_created guild_id=%s user_id=%s channel=%s", guild.id, member.id, channel.name)
    await reply_ephemeral(interaction, f"Your ticket has been created: {channel.mention}", edit=True)


async def close_ticket_after_submission(message: discord.Message, thank_you: discord.Message):
    await asyncio.sleep(THANK_YOU_DELETE_SECONDS)
    for msg in (message, thank_you):
        try:
            await msg.delete()
        except discord.NotFound:
            pass
        except discord.HTTPException:
            logger.warning("ticket_message_delete_failed message_id=%s", msg.id)
    await asyncio.sleep(TICKET_CLOSE_DELAY_SECONDS)
    try:
        await message.channel.delete(reason="Ticket closed after successful screenshot submission.")
        logger.info("ticket_closed channel=%s channel_id=%s", message.channel.name, message.channel.id)
    except discord.NotFound:
        pass
    except discord.HTTPException:
        logger.exception("ticket_close_failed channel_id=%s", message.channel.id)


async def handle_submission(message: discord.Message, attachment: discord.Attachment, cfg: GuildConfig):
    spreadsheet_id, sheet_name, folder_id = resolve_targets(cfg)
    outcome: Outcome | None = None
    try:
        image_bytes = await attachment.read()
    except discord.HTTPException:
        logger.exception("submission_download_failed user_id=%s url=%s", message.author.id, attachment.url)
    else:
        outcome = await reconciler.reconcile(
            SubmitterIdentity(
                account_id=message.author.id,
                tag=str(message.author),
                display_name=message.author.display_name,
            ),
            image_bytes,
            attachment.content_type,
            SubmissionContext(
                spreadsheet_id=spreadsheet_id,
                base_sheet_name=sheet_name,
                folder_id=folder_id,
                channel_name=message.channel.name,
                file_name=attachment.filename,
                joined_at=getattr(message.author, "joined_at", None),
            ),
        )
    try:
        if outcome is None or not outcome.ok:
            await message.channel.send("⚠️ Error processing your screenshot (Drive/Sheets). An admin has been notified in the logs.")
            await message.add_reaction(FAILURE_EMOJI)
            return
        await message.add_reaction(SUCCESS_EMOJI)
        verb = "updated" if outcome.replaced else "logged"
        thank_you = await message.channel.send(
            f"🎉 Thank you, {message.author.mention}! Your {outcome.day_label} screenshot has been {verb}. "
            "This message, your original image, and this ticket channel will be removed shortly."
        )
    except (discord.Forbidden, discord.HTTPException):
        logger.exception("submission_feedback_failed channel_id=%s", message.channel.id)
        return
    spawn(close_ticket_after_submission(message, thank_you))


@bot.event
async def on_message(message: discord.Message):
    if message.author.bot or message.guild is None:
        return
    if tickets.cancel_cleanup(message.channel.id):
        logger.info("ticket_blank_cleanup_cancelled channel_id=%s", message.channel.id)
    cfg = guild_store.get(message.guild.id) if guild_store else None
    if cfg is None or not is_ticket_channel(
        message.channel.name, getattr(message.channel, "category_id", None), cfg.ticket_category_id
    ):
        await bot.process_commands(message)
        return
    try:
        if not message.attachments:
            await message.reply(TEXT_ONLY_REPLY)
            return
        attachment = message.attachments[0]
        if not is_image_attachment(attachment.filename, attachment.content_type):
            await message.reply(NOT_AN_IMAGE_REPLY)
            return
    except (discord.Forbidden, discord.HTTPException):
        logger.exception("ticket_reply_failed channel_id=%s", message.channel.id)
        return
    await handle_submission(message, attachment, cfg)


@bot.event
async def on_guild_channel_delete(channel: discord.abc.GuildChannel):
    owner = tickets.forget_channel(channel.id)
    if owner is not None:
        logger.info("ticket_forgotten guild_id=%s user_id=%s channel_id=%s", owner[0], owner[1], channel.id)


# =========================
# PROMPT + WEEKLY RESET
# =========================
async def update_prompt_message(cfg: GuildConfig):
    if not cfg.prompt_channel_id or not cfg.prompt_message_id:
        return
    try:
        channel = bot.get_channel(cfg.prompt_channel_id) or await bot.fetch_channel(cfg.prompt_channel_id)
        message = await channel.fetch_message(cfg.prompt_message_id)
        content = prompt_content(utcnow())
        if message.content != content:
            await message.edit(content=content)
    except discord.NotFound:
        logger.info("prompt_message_missing guild_id=%s message_id=%s", cfg.guild_id, cfg.prompt_message_id)
    except (discord.Forbidden, discord.HTTPException):
        logger.warning("prompt_update_failed guild_id=%s channel_id=%s", cfg.guild_id, cfg.prompt_channel_id)


@tasks.loop(minutes=PROMPT_REFRESH_MINUTES)
async def refresh_prompt_messages():
    for cfg in guild_store.all():
        await update_prompt_message(cfg)


def reset_targets() -> list[tuple[str, str]]:
    targets = {(settings.spreadsheet_id, settings.sheet_name)}
    for cfg in guild_store.all():
        spreadsheet_id, sheet_name, _ = resolve_targets(cfg)
        targets.add((spreadsheet_id, sheet_name))
    return sorted(targets)


async def run_due_weekly_resets(now: datetime | None = None) -> list[ResetReport]:
    now = now or utcnow()
    this_week = week_start(now).date()
    reports = []
    for spreadsheet_id, sheet_name in reset_targets():
        state_key = f"{LAST_RESET_STATE_KEY}:{spreadsheet_id}:{sheet_name}"
        last = guild_store.gget(GLOBAL_STATE_GUILD_ID, state_key)
        if last is None:
            # first run for this target: start counting from the current week
            guild_store.gset(GLOBAL_STATE_GUILD_ID, state_key, this_week.isoformat())
            continue
        if not is_reset_due(now, date.fromisoformat(last)):
            continue
        report = await reset_scheduler.sweep(spreadsheet_id, sheet_name)
        if report.cleared:
            guild_store.gset(GLOBAL_STATE_GUILD_ID, state_key, this_week.isoformat())
        logger.info(
            "weekly_reset_ran spreadsheet_id=%s sheet=%r cleared=%s deleted=%s failed=%s",
            spreadsheet_id, sheet_name, report.cleared, len(report.deleted_blob_ids), len(report.failed_blob_ids),
        )
        reports.append(report)
    return reports


@tasks.loop(time=dtime(hour=0, minute=0, tzinfo=timezone.utc))
async def weekly_reset_midnight_utc():
    await run_due_weekly_resets()


def describe_report(report: ResetReport, scope: str) -> str:
    if not report.cleared:
        return f"Failed to clear {scope}. Nothing was changed; check the bot logs."
    text = (
        f"Cleared {scope} in {len(report.tables)} submitter table(s). "
        f"Deleted {len(report.deleted_blob_ids)} Drive file(s)."
    )
    if report.failed_blob_ids:
        text += f" {len(report.failed_blob_ids)} Drive file(s) could not be deleted; see logs."
    return text


# =========================
# COMMANDS (slash)
# =========================
@bot.slash_command(name="setup", description="Sets up or updates the ticket system prompt in the current channel.")
@discord.default_permissions(administrator=True)
@discord.guild_only()
async def setup(ctx: discord.ApplicationContext):
    interaction = ctx.interaction
    channel = ctx.channel
    if not is_admin(ctx.author):
        await reply_ephemeral(interaction, "You must be an administrator to run this command.")
        return
    if not isinstance(channel, discord.TextChannel):
        await reply_ephemeral(interaction, "This command must be used in a standard text channel.")
        return
    if channel.category is None:
        await reply_ephemeral(
            interaction,
            "This channel is not in a category. Please run this command in a channel that is within "
            "a category designated for ticket prompts.",
        )
        return
    guild = ctx.guild
    category = channel.category
    shutdown_role = discord.utils.get(guild.roles, name=SHUTDOWN_ROLE_NAME)
    admin_role_ids = [
        role.id for role in guild.roles
        if role.permissions.administrator and not role.managed and not role.is_default()
    ]
    await interaction.response.defer(ephemeral=True)
    existing = guild_store.get(guild.id)
    if existing and existing.prompt_channel_id and existing.prompt_message_id:
        try:
            old_channel = bot.get_channel(existing.prompt_channel_id) or await bot.fetch_channel(existing.prompt_channel_id)
            old_message = await old_channel.fetch_message(existing.prompt_message_id)
            await old_message.delete()
        except (discord.NotFound, discord.Forbidden, discord.HTTPException):
            logger.warning("setup_old_prompt_delete_failed guild_id=%s", guild.id)
    try:
        prompt = await channel.send(prompt_content(utcnow()), view=TicketPromptView())
    except (discord.Forbidden, discord.HTTPException):
        logger.exception("setup_prompt_send_failed guild_id=%s channel_id=%s", guild.id, channel.id)
        await reply_ephemeral(interaction, "An error occurred during setup. Please check bot permissions.", edit=True)
        return
    cfg = GuildConfig(
        guild_id=guild.id,
        guild_name=guild.name,
        prompt_channel_id=channel.id,
        prompt_message_id=prompt.id,
        ticket_category_id=category.id,
        ticket_category_name=category.name,
        admin_role_ids=admin_role_ids,
        shutdown_role_id=shutdown_role.id if shutdown_role else None,
        shutdown_role_name=shutdown_role.name if shutdown_role else None,
        spreadsheet_id=(existing.spreadsheet_id if existing else None) or settings.spreadsheet_id,
        sheet_name=(existing.sheet_name if existing else None) or settings.sheet_name,
        drive_folder_id=(existing.drive_folder_id if existing else None) or settings.drive_folder_id,
    )
    await guild_store.save(cfg, utcnow().isoformat())
    logger.info("setup_saved guild_id=%s prompt_message_id=%s category=%r", guild.id, prompt.id, category.name)
    await reply_ephemeral(
        interaction,
        f"Setup complete! The new ticket prompt has been posted in #{channel.name}. Category: \"{category.name}\".",
        edit=True,
    )


@bot.slash_command(name="close", description="Closes the current ticket channel (deletes it).")
@discord.default_permissions(administrator=True)
@discord.guild_only()
async def close(ctx: discord.ApplicationContext):
    interaction = ctx.interaction
    if not is_admin(ctx.author):
        await reply_ephemeral(interaction, "You must be an administrator to run this command.")
        return
    cfg = guild_store.get(ctx.guild.id)
    if cfg is None:
        await reply_ephemeral(interaction, "Ticket system not configured for this server. Please run /setup.")
        return
    channel = ctx.channel
    if not isinstance(channel, discord.TextChannel) or not is_ticket_channel(
        channel.name, channel.category_id, cfg.ticket_category_id
    ):
        await reply_ephemeral(interaction, "This command can only be used inside an active ticket channel created by the bot.")
        return
    await interaction.response.defer(ephemeral=True)
    await reply_ephemeral(interaction, f"Closing this ticket channel (`{channel.name}`) now...", edit=True)
    logger.info("ticket_close_requested admin=%s channel=%s channel_id=%s", ctx.author, channel.name, channel.id)

    async def _delete_channel():
        await asyncio.sleep(ADMIN_CLOSE_DELAY_SECONDS)
        try:
            await channel.delete(reason=f"Ticket closed by admin: {ctx.author}")
        except discord.NotFound:
            pass
        except discord.HTTPException:
            logger.exception("ticket_close_failed channel_id=%s", channel.id)

    spawn(_delete_channel())


@bot.slash_command(name="tableclear", description="Clears this week's screenshot log and deletes the stored screenshots.")
@discord.default_permissions(administrator=True)
@discord.guild_only()
async def tableclear(ctx: discord.ApplicationContext):
    interaction = ctx.interaction
    if not is_admin(ctx.author):
        await reply_ephemeral(interaction, "You must be an administrator to run this command.")
        return
    await interaction.response.defer(ephemeral=True)
    spreadsheet_id, sheet_name, _ = resolve_targets(guild_store.get(ctx.guild.id))
    report = await reset_scheduler.sweep(spreadsheet_id, sheet_name)
    logger.info("tableclear_ran admin=%s guild_id=%s cleared=%s", ctx.author, ctx.guild.id, report.cleared)
    await reply_ephemeral(interaction, describe_report(report, "all days"), edit=True)


@bot.slash_command(name="clearday", description="Clears today's (UTC) slot for every submitter and deletes its screenshots.")
@discord.default_permissions(administrator=True)
@discord.guild_only()
async def clearday(ctx: discord.ApplicationContext):
    interaction = ctx.interaction
    if not is_admin(ctx.author):
        await reply_ephemeral(interaction, "You must be an administrator to run this command.")
        return
    await interaction.response.defer(ephemeral=True)
    spreadsheet_id, sheet_name, _ = resolve_targets(guild_store.get(ctx.guild.id))
    report = await reset_scheduler.clear_today(spreadsheet_id, sheet_name, utcnow())
    logger.info("clearday_ran admin=%s guild_id=%s cleared=%s", ctx.author, ctx.guild.id, report.cleared)
    await reply_ephemeral(interaction, describe_report(report, ", ".join(report.day_labels)), edit=True)


# =========================
# STARTUP
# =========================
@bot.event
async def on_ready():
    global startup_failed
    register_loop_exception_handler(asyncio.get_running_loop())
    if not refresh_prompt_messages.is_running():
        try:
            await verify_remote_targets(
                reconciler.records, reconciler.blobs, settings.spreadsheet_id, settings.drive_folder_id
            )
        except ConfigurationError as exc:
            logger.critical("startup_google_targets_invalid error=%s", exc)
            startup_failed = True
            await bot.close()
            return
        bot.add_view(TicketPromptView())
        refresh_prompt_messages.start()
    if not weekly_reset_midnight_utc.is_running():
        weekly_reset_midnight_utc.start()
    # catch up on a reset missed while offline
    await run_due_weekly_resets()
    logger.info("bot_ready user=%s user_id=%s", bot.user, bot.user.id)


def main():
    global settings, guild_store, reconciler, reset_scheduler
    try:
        settings = load_settings()
    except ConfigurationError as exc:
        configure_logging()
        logger.critical("startup_config_invalid error=%s", exc)
        raise SystemExit(1)
    configure_logging(settings.log_dir, settings.log_level)
    try:
        credentials = load_google_credentials(settings)
    except ConfigurationError as exc:
        logger.critical("startup_config_invalid error=%s", exc)
        raise SystemExit(1)
    records = SheetsRecordStore.from_credentials(credentials)
    blobs = DriveBlobStore.from_credentials(credentials)
    guild_store = GuildStore(settings.config_db_path)
    guild_store.init_db()
    reconciler = SubmissionReconciler(records, blobs)
    reset_scheduler = WeeklyResetScheduler(records, blobs)
    bot.run(settings.discord_token)
    if startup_failed:
        raise SystemExit(1)
