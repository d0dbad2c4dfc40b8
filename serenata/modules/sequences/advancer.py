"""
Drip-sequence advancer: sends due steps of every active sequence on every lead.

Every lead with an active sequence is visited each tick, paged by (created_at, id).
Step delays count from the sequence start. One step per instance per tick; the
index is moved forward with a compare-and-swap after the send, so it never goes
backwards. A crash between send and index update re-sends that step next tick.
"""

import logging
from datetime import datetime, timedelta

from serenata.clock import Clock, utcnow
from serenata.config import Settings
from serenata.models.lead import ActiveSequence, Lead, Message
from serenata.models.sequence import SequenceDefinition, Step, StepType
from serenata.modules.sequences.templating import render_form_link, render_template
from serenata.modules.store.base import LeadStore
from serenata.modules.whatsapp.sender import OutboundChannel

logger = logging.getLogger(__name__)


class SequenceAdvancer:
    name = "sequences"

    def __init__(self, settings: Settings, store: LeadStore, channel: OutboundChannel, clock: Clock = utcnow):
        self.settings = settings
        self.store = store
        self.channel = channel
        self.clock = clock

    async def tick(self) -> int:
        """Visit every lead with active sequences, one page of batch_size leads at a time."""
        now = self.clock()
        page_size = max(self.settings.batch_size, 1)
        definitions: dict[str, SequenceDefinition | None] = {}
        sent = 0
        after = None
        while True:
            leads = await self.store.find_leads_with_active_sequences(limit=page_size, after=after)
            for lead in leads:
                try:
                    sent += await self.process_lead(lead, now, definitions)
                except Exception:
                    logger.exception("[sequences] lead %s failed", lead.id)
            if len(leads) < page_size:
                break
            after = (leads[-1].created_at, leads[-1].id)
        if sent:
            logger.info("[sequences] sent %d step(s)", sent)
        return sent

    async def _definition(self, trigger: str, cache: dict) -> SequenceDefinition | None:
        if trigger not in cache:
            cache[trigger] = await self.store.get_sequence(trigger)
        return cache[trigger]

    async def process_lead(self, lead: Lead, now: datetime, definitions: dict | None = None) -> int:
        definitions = {} if definitions is None else definitions
        changed = False
        sent = 0

        for seq in lead.active_sequences:
            if seq.completed:
                changed = True
                continue

            definition = await self._definition(seq.trigger, definitions)
            if definition is None:
                logger.warning("[sequences] no definition for trigger %s (lead %s)", seq.trigger, lead.id)
                continue

            if seq.step_index >= len(definition.steps):
                if await self.store.advance_sequence(lead.id, seq.id, seq.step_index, seq.step_index, True):
                    logger.info("[sequences] lead %s finished %s", lead.id, seq.trigger)
                    changed = True
                continue

            step = definition.steps[seq.step_index]
            if now < seq.start_time + timedelta(minutes=step.delay_minutes):
                continue

            try:
                await self.dispatch(lead, step)
            except Exception:
                logger.exception(
                    "[sequences] lead %s: step %d of %s failed", lead.id, seq.step_index, seq.trigger,
                )
                continue

            await self._log_step(lead, seq, step, now)
            if await self.store.advance_sequence(lead.id, seq.id, seq.step_index, seq.step_index + 1, False):
                changed = True
                sent += 1
            else:
                logger.warning(
                    "[sequences] lead %s: %s already moved past step %d", lead.id, seq.trigger, seq.step_index,
                )

        if changed:
            await self.store.prune_completed_sequences(lead.id)
        return sent

    async def dispatch(self, lead: Lead, step: Step) -> None:
        if step.type == StepType.TEXT:
            await self.channel.send_text(lead.phone, render_template(step.content, lead), lead.id)
        elif step.type == StepType.FORM:
            await self.channel.send_text(lead.phone, render_form_link(step.content, lead), lead.id)
        elif step.type == StepType.AUDIO:
            await self.channel.send_audio(lead.phone, step.content.strip(), lead.id)
        elif step.type == StepType.VIDEO:
            await self.channel.send_video(lead.phone, step.content.strip(), lead.id)
        elif step.type == StepType.IMAGE:
            # No native image sends in sequences: the URL goes out as text.
            await self.channel.send_text(lead.phone, step.content.strip(), lead.id)

    async def _log_step(self, lead: Lead, seq: ActiveSequence, step: Step, now: datetime) -> None:
        await self.store.append_message(lead.id, Message(
            content=f"Secuencia {seq.trigger}: paso {seq.step_index + 1} ({step.type.value}) enviado",
            sender="system",
            timestamp=now,
        ))
