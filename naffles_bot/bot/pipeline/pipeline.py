"""The interaction pipeline.

Every command, button click, menu selection and modal submission runs
through :meth:`InteractionPipeline.process`, which applies the same ordered
checks before a handler sees the event and always ends in exactly one
recorded outcome: ``success``, ``error``, ``denied``, ``cooldown`` or
``rate-limit``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

import hikari
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from naffles_bot.bot.pipeline.context import (
    CATEGORY_COMMAND,
    InteractionContext,
    InteractionEnvelope,
    Reply,
    Responder,
)
from naffles_bot.bot.pipeline.errors import (
    DOMAIN_API,
    DOMAIN_DATABASE,
    DOMAIN_DISCORD,
    DOMAIN_GENERAL,
    ErrorVerdict,
    HandlerError,
)
from naffles_bot.bot.pipeline.permissions import REASON_BOT
from naffles_bot.bot.pipeline.rate_limiter import cooldown_message, rate_limit_message
from naffles_bot.bot.pipeline.router import RouteMatch
from naffles_bot.bot.services.exceptions import APIError, NetworkError
from naffles_bot.bot.utils.embeds import create_error_embed
from naffles_bot.shared.logging_utils import get_category_logger, log_performance, log_security
from naffles_bot.web.crud import DatabaseOperationError
from naffles_bot.web.models import ServerCommunityLink

if TYPE_CHECKING:
    from naffles_bot.bot.services.container import BotServices

logger = logging.getLogger(__name__)
interaction_logger = get_category_logger("interaction")

CONNECTIVITY_TYPES = frozenset({"connection", "network", "server_error", "timeout"})
INTERNAL_ERROR_TYPES = frozenset({"type_error", "reference_error", "syntax_error", "unknown"})

UNKNOWN_INTERACTION_MESSAGE = "❌ This interaction is no longer available. Please run the command again."


@dataclass(frozen=True)
class PipelineOutcome:
    """Terminal result of one pipeline run."""

    outcome: str
    response_time_ms: float
    reason: Optional[str] = None
    error_type: Optional[str] = None
    verdict: Optional[ErrorVerdict] = None


class _ShortCircuit(Exception):
    """Internal signal that a stage ended the run."""

    def __init__(self, outcome: str, reason: str, reply: Optional[Reply] = None, error_type: Optional[str] = None):
        super().__init__(reason)
        self.outcome = outcome
        self.reason = reason
        self.reply = reply
        self.error_type = error_type


def error_domain(error: BaseException) -> str:
    """Which classifier table an exception belongs to."""
    if isinstance(error, hikari.HTTPError):
        return DOMAIN_DISCORD
    if isinstance(error, (APIError, NetworkError)):
        return DOMAIN_API
    if isinstance(error, (DatabaseOperationError, SQLAlchemyError, RedisError)):
        return DOMAIN_DATABASE
    return DOMAIN_GENERAL


class InteractionPipeline:
    """Runs the per-event stages.

    Stages, in order: normalize (reject bots), account-age gate, rate limit,
    cooldown check (commands only), permission evaluation, maintenance check,
    cooldown mark, dispatch, error classification and degradation, observation.

    Args:
        services: Service container
        clock: Monotonic clock used for response times
    """

    def __init__(self, services: "BotServices", clock: Callable[[], float] = time.perf_counter):
        self.services = services
        self._clock = clock

    # Stages

    def _reject_bots(self, envelope: InteractionEnvelope) -> None:
        if envelope.is_bot:
            log_security("Bot account interaction rejected", user_id=envelope.user_id, name=envelope.name)
            raise _ShortCircuit("denied", REASON_BOT)

    def _resolve(self, envelope: InteractionEnvelope) -> RouteMatch:
        match = self.services.registry.resolve(envelope.category, envelope.name)
        if match is None:
            logger.warning(f"No handler for {envelope.category} '{envelope.name}'")
            raise _ShortCircuit(
                "error",
                "unknown interaction",
                Reply(content=UNKNOWN_INTERACTION_MESSAGE),
                error_type="unknown_interaction",
            )
        return match

    def _check_account_age(self, envelope: InteractionEnvelope, match: RouteMatch) -> None:
        permissions = self.services.permissions
        if not permissions.policy_for(match.route.permission_key).requires_account_age:
            return
        if envelope.category != CATEGORY_COMMAND and match.route.permission is None:
            return
        result = permissions.check_account_age(envelope)
        if not result.allowed:
            raise _ShortCircuit("denied", result.reason, Reply(embed=create_error_embed(result.reason)))

    async def _check_rate_limit(self, envelope: InteractionEnvelope) -> None:
        result = await self.services.rate_limiter.check(envelope.subject, envelope.category)
        if not result.allowed:
            message = rate_limit_message(envelope.category, result)
            raise _ShortCircuit("rate-limit", message, Reply(content=message))

    def _check_cooldown(self, envelope: InteractionEnvelope) -> None:
        if envelope.category != CATEGORY_COMMAND:
            return
        remaining = self.services.cooldowns.remaining(envelope.user_id, envelope.name)
        if remaining > 0:
            message = cooldown_message(remaining)
            raise _ShortCircuit("cooldown", message, Reply(content=message))

    def _mark_cooldown(self, envelope: InteractionEnvelope) -> None:
        if envelope.category == CATEGORY_COMMAND:
            self.services.cooldowns.mark_used(envelope.user_id, envelope.name)

    async def _load_server_link(self, guild_id: Optional[str]) -> Optional[ServerCommunityLink]:
        if guild_id is None:
            return None
        async with self.services.session_factory() as session:
            return await self.services.server_links.get_server_link(session, guild_id)

    async def _check_permissions(self, envelope: InteractionEnvelope, match: RouteMatch) -> None:
        if envelope.category != CATEGORY_COMMAND and match.route.permission is None:
            return
        command = match.route.permission_key
        server_link = None
        if self.services.permissions.policy_for(command).role_override:
            server_link = await self._load_server_link(envelope.guild_id)
        result = self.services.permissions.evaluate(envelope, command, server_link)
        if not result.allowed:
            raise _ShortCircuit("denied", result.reason, Reply(embed=create_error_embed(result.reason, "❌ Permission Denied")))

    def _check_maintenance(self) -> None:
        fallback = self.services.fallback
        if fallback.maintenance_active:
            raise _ShortCircuit("denied", "maintenance", fallback.maintenance_response())

    # Failure handling

    def _reply_for_verdict(self, verdict: ErrorVerdict, operation: str) -> Reply:
        fallback = self.services.fallback
        if verdict.type in CONNECTIVITY_TYPES and verdict.severity in ("high", "critical"):
            return fallback.for_verdict(verdict, operation)
        if verdict.domain == DOMAIN_GENERAL and verdict.type in INTERNAL_ERROR_TYPES:
            return fallback.critical_failure(verdict.type)
        return Reply(embed=create_error_embed(verdict.display_message()))

    @staticmethod
    def _reply_for_handler_error(error: HandlerError) -> Reply:
        if error.title:
            return Reply(embed=create_error_embed(error.message, error.title))
        return Reply(content=error.message)

    async def _deliver(self, ctx: InteractionContext, reply: Reply) -> None:
        try:
            await ctx.respond(reply)
        except Exception as e:
            logger.error(f"Failed to deliver reply for {ctx.envelope.name}: {e}")

    # Entry point

    async def process(self, envelope: InteractionEnvelope, responder: Responder) -> PipelineOutcome:
        """Run one interaction through every stage and record its outcome."""
        started = self._clock()
        ctx = InteractionContext(envelope, responder, self.services)
        outcome, reason, error_type = "success", None, None
        verdict: Optional[ErrorVerdict] = None
        operation = envelope.name

        try:
            self._reject_bots(envelope)
            match = self._resolve(envelope)
            operation = match.route.operation or envelope.name
            self._check_account_age(envelope, match)
            await self._check_rate_limit(envelope)
            self._check_cooldown(envelope)
            await self._check_permissions(envelope, match)
            self._check_maintenance()
            self._mark_cooldown(envelope)

            ctx.argument = match.argument
            await match.route.handler(ctx)
            if not ctx.is_answered:
                logger.warning(f"Handler for {envelope.name} finished without replying")
                await ctx.respond(Reply(content="✅ Done."))
            reason = ctx.outcome_detail

        except _ShortCircuit as stop:
            outcome, reason, error_type = stop.outcome, stop.reason, stop.error_type
            if stop.reply is not None:
                await self._deliver(ctx, stop.reply)

        except HandlerError as e:
            outcome, reason, error_type = "error", e.message, e.error_type
            await self._deliver(ctx, self._reply_for_handler_error(e))

        except Exception as e:
            verdict = self.services.classifier.classify(e, error_domain(e))
            outcome, reason, error_type = "error", verdict.raw.message, verdict.type
            logger.error(f"❌ Error handling {envelope.category} '{envelope.name}': {e}", exc_info=True)
            await self._deliver(ctx, self._reply_for_verdict(verdict, operation))

        response_time_ms = (self._clock() - started) * 1000
        result = PipelineOutcome(outcome, response_time_ms, reason, error_type, verdict)
        await self._observe(envelope, result)
        return result

    async def _observe(self, envelope: InteractionEnvelope, result: PipelineOutcome) -> None:
        services = self.services
        if envelope.category == CATEGORY_COMMAND:
            services.commands_processed += 1
        if result.outcome == "error":
            services.errors_encountered += 1

        services.audit.record_outcome(
            envelope,
            result.outcome,
            result.response_time_ms,
            error_type=result.error_type,
            reason=result.reason,
        )
        services.security.observe(envelope, result.outcome)
        log_performance(f"{envelope.category}:{envelope.name}", result.response_time_ms, outcome=result.outcome)
        interaction_logger.info(
            f"{envelope.category} {envelope.name} by {envelope.user_id} in {envelope.guild_id}: {result.outcome}"
        )

        try:
            async with services.session_factory() as session:
                await services.interaction_logs.log_interaction(
                    session,
                    interaction_id=envelope.interaction_id,
                    user_id=envelope.user_id,
                    category=envelope.category,
                    name=envelope.name,
                    action=envelope.name.split("_")[0] if envelope.category != CATEGORY_COMMAND else envelope.name,
                    result=result.outcome,
                    guild_id=envelope.guild_id,
                    channel_id=envelope.channel_id,
                    response_time_ms=result.response_time_ms,
                    error_type=result.error_type,
                    context={"reason": result.reason} if result.reason else {},
                )
        except Exception as e:
            logger.error(f"Failed to persist interaction log for {envelope.interaction_id}: {e}")
