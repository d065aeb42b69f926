"""Round orchestrator — runs one group-conversation round end-to-end.

Round flow (triggered by one player message):
  1. Append the player's message to the transcript.
  2. Re-validate the roster against a fresh world snapshot: members who are
     gone or out of earshot are dropped with an annotation. If the initiator
     is gone the round ends at once ("all_participants_lost").
  3. Admit up to max_new_joiners nearby characters, announce each, and give
     each newcomer a welcome line.
  4. Scheduler loop: drop members who left, pick a speaker, build the
     prompt, wait for the reply (bounded by reply_timeout), re-check the
     roster, append the reply, queue any mentions. Repeat until the
     scheduler says stop.
  5. Hand the round's dialogue to the summariser; store memories and the
     session.

Only the generation call suspends. Every decision reads the roster and the
world again, since both may have changed while a reply was pending. A reply
that arrives after session.clear() (epoch changed) is dropped.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re

from earshot.config import ChatSettings
from earshot.discovery import CandidateRefresh, refresh_candidates
from earshot.llm import TextGenerator, ask
from earshot.mentions import detect_mentions
from earshot.models import Character, Point, RoundEndReason, RoundResult, SystemEvent
from earshot.prompts import PromptBuilder, PromptError
from earshot.scheduler import RoundState, TurnScheduler
from earshot.session import ConversationSession, RoundInProgress
from earshot.storage import Storage
from earshot.summary import store_memories, summarize_round
from earshot.world import WorldError, WorldView

logger = logging.getLogger(__name__)


async def run_round(
    session: ConversationSession,
    world: WorldView,
    message: str,
    *,
    generator: TextGenerator,
    settings: ChatSettings,
    prompts: PromptBuilder | None = None,
    storage: Storage | None = None,
    rng: random.Random | None = None,
    summarize: bool = True,
) -> RoundResult:
    """Execute one round for a player message and return how it ended.

    Raises RoundInProgress if the session already has a round running.
    Task cancellation propagates after the session is put back to idle.
    """
    round_ = _Round(
        session, world, generator, settings,
        prompts or PromptBuilder(), storage, TurnScheduler(settings, rng),
    )
    return await round_.run(message, summarize=summarize)


class _Round:
    def __init__(
        self,
        session: ConversationSession,
        world: WorldView,
        generator: TextGenerator,
        settings: ChatSettings,
        prompts: PromptBuilder,
        storage: Storage | None,
        scheduler: TurnScheduler,
    ) -> None:
        self.session = session
        self.world = world
        self.generator = generator
        self.settings = settings
        self.prompts = prompts
        self.storage = storage
        self.scheduler = scheduler
        self.state = RoundState()
        self.result = RoundResult(reason="completed")
        self.epoch = 0
        self.start_index = 0

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self, message: str, *, summarize: bool) -> RoundResult:
        self.epoch = self.session.begin_round()
        self.start_index = len(self.session.lines)
        try:
            self.session.add_user_message(message)
            self.result.reason = await self._play(message)
        except asyncio.CancelledError:
            logger.info("round cancelled in session %s", self.session.session_id)
            self.result.reason = "cancelled"
            raise
        finally:
            self.session.end_round()
            self._finish_result()
            self._persist()

        if summarize and self.result.reason != "cancelled" and not self._stale():
            await self._summarize()
        logger.info(
            "round ended session=%s reason=%s turns=%d skipped=%d",
            self.session.session_id, self.result.reason,
            self.result.turns_taken, self.result.skipped_turns,
        )
        return self.result

    async def _play(self, message: str) -> RoundEndReason:
        refresh = self._revalidate()
        if refresh.initiator_lost:
            self.session.annotate("all_gone")
            return "all_participants_lost"

        self.state = RoundState(self.session.members)
        first_message = self.session.user_message_count() == 1
        await self._admit_newcomers(refresh, message, first_message)
        if self._stale():
            return "cancelled"

        self.session.start_turns()
        return await self._turn_loop(message)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _revalidate(self) -> CandidateRefresh:
        """Drop stale members until the roster is consistent with the world."""
        while True:
            refresh = refresh_candidates(self.world, self.session.roster, self.settings)
            if refresh.initiator_lost or not refresh.must_leave:
                return refresh
            for departure in refresh.must_leave:
                self._drop(departure.character_id, departure.reason)

    def _initiator_lost(self) -> bool:
        """Re-read the world between turns. True when the round has to end."""
        if self._revalidate().initiator_lost:
            self.session.annotate("all_gone")
            return True
        return False

    def _drop(self, character_id: str, event: SystemEvent) -> None:
        char = self.world.character(character_id)
        label = char.label if char is not None else character_id
        if self.session.drop(character_id, label, event):
            self.result.left.append(character_id)
            self.state.forget(character_id)

    def _join_event(self, newcomer: Character, center: Point | None, map_id: str) -> SystemEvent:
        try:
            room_new = self.world.room_at(map_id, newcomer.position)
            room_center = self.world.room_at(map_id, center) if center is not None else None
        except (WorldError, LookupError, ValueError):
            return "joined_nearby"
        if room_new is not None and room_new == room_center:
            return "joined_room"
        if room_new is None and room_center is None:
            return "joined_outdoor"
        return "joined_nearby"

    async def _admit_newcomers(
        self, refresh: CandidateRefresh, message: str, first_message: bool
    ) -> None:
        for cid in refresh.joinable[: self.settings.max_new_joiners]:
            newcomer = self.world.character(cid)
            if newcomer is None or refresh.map_id is None:
                continue
            event = self._join_event(newcomer, refresh.center, refresh.map_id)
            if not self.session.admit(newcomer, event):
                continue
            self.result.joined.append(cid)
            self.state.add_member(cid)

            others = self._characters(m for m in self.session.members if m != cid)
            try:
                prompt = self.prompts.welcome(newcomer, others, message, first_message=first_message)
            except PromptError as e:
                logger.warning("welcome prompt failed for %s: %s", cid, e)
                continue
            reply = await self._generate("welcome", newcomer, prompt)
            if self._stale():
                return
            if reply is not None and cid in self.session.roster:
                self.session.add_dialog(newcomer, reply)
                self.state.record_turn(cid, counts_toward_total=False)

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def _turn_loop(self, message: str) -> RoundEndReason:
        while True:
            if self._stale():
                return "cancelled"
            if self._initiator_lost():
                return "all_participants_lost"
            members = self.session.members
            reason = self.scheduler.should_stop(members, self.state)
            if reason is not None:
                return reason

            self.state.record_iteration()
            speaker_id = self.scheduler.next_speaker(members, self.state)
            if speaker_id is None:
                return "completed"
            speaker = {c.id: c for c in self._characters(members)}[speaker_id]

            reply = await self._speaker_turn(speaker, members, message)
            if self._stale():
                return "cancelled"
            # The speaker may have walked off while the reply was generated
            if self._initiator_lost():
                return "all_participants_lost"

            if reply is not None and speaker_id in self.session.roster:
                self.session.add_dialog(speaker, reply)
                self.state.record_turn(speaker_id)
                mentioned = detect_mentions(
                    reply,
                    self._characters(self.session.members),
                    speaker_id,
                    strict=self.settings.strict_mentions,
                )
                if mentioned:
                    logger.debug("%s mentioned %s", speaker_id, mentioned)
                    self.state.queue_mentions(mentioned)
            else:
                self.result.skipped_turns += 1

            if self.settings.turn_pause:
                await asyncio.sleep(self.settings.turn_pause)

    async def _speaker_turn(
        self, speaker: Character, members: list[str], message: str
    ) -> str | None:
        others = self._characters(m for m in members if m != speaker.id)
        history = self.session.recent_history(self.settings.history_window)
        try:
            prompt = self.prompts.group_turn(
                speaker, others, history, message,
                first_turn=self.state.total_turns == 0,
                window=self.settings.history_window,
            )
        except PromptError as e:
            logger.warning("turn prompt failed for %s: %s", speaker.id, e)
            return None

        if self.settings.typing_pause:
            await asyncio.sleep(self.settings.typing_pause)
        return await self._generate("group_turn", speaker, prompt)

    async def _generate(self, stage: str, speaker: Character, prompt: str) -> str | None:
        reply = await ask(self.generator, stage, prompt, self.settings.reply_timeout)
        if reply is None:
            return None
        reply = strip_speaker_prefix(reply, speaker)
        if len(reply) < self.settings.min_reply_length:
            logger.debug("reply from %s too short: %r", speaker.id, reply)
            return None
        return reply

    # ------------------------------------------------------------------
    # Wrap-up
    # ------------------------------------------------------------------

    def _stale(self) -> bool:
        return self.session.epoch != self.epoch

    def _characters(self, ids) -> list[Character]:
        chars = []
        for cid in ids:
            char = self.world.character(cid)
            if char is not None:
                chars.append(char)
        return chars

    def _finish_result(self) -> None:
        self.result.turns_taken = self.state.total_turns
        self.result.participation = dict(self.state.participation)
        if self._stale():
            self.result.reason = "cancelled"
            self.result.new_lines = []
        else:
            self.result.new_lines = self.session.lines[self.start_index:]

    def _persist(self) -> None:
        if self.storage is not None:
            self.storage.save_session(self.session.to_record())

    async def _summarize(self) -> None:
        transcript = self.session.summary_text(self.start_index)
        if not transcript:
            return
        participants = self._characters(self.session.members)
        memories = await summarize_round(
            self.generator, transcript, participants,
            settings=self.settings, prompts=self.prompts,
        )
        self.result.memories = memories
        if self.storage is not None and memories:
            store_memories(self.storage, self.world.current_day(), memories)


def strip_speaker_prefix(reply: str, speaker: Character) -> str:
    """Remove a leading "Name:" the model sometimes echoes back."""
    for label in {speaker.label, speaker.name}:
        pattern = rf"^\s*{re.escape(label)}\s*:\s*"
        if re.match(pattern, reply, flags=re.IGNORECASE):
            return re.sub(pattern, "", reply, count=1, flags=re.IGNORECASE).strip()
    return reply.strip()


# ---------------------------------------------------------------------------
# ConversationRunner — one background round per session
# ---------------------------------------------------------------------------

class ConversationRunner:
    """Runs rounds as asyncio tasks so the host can cancel them.

    Rounds of different sessions run concurrently; a second round for the
    same session is refused with RoundInProgress.
    """

    def __init__(
        self,
        world: WorldView,
        generator: TextGenerator,
        settings: ChatSettings,
        *,
        prompts: PromptBuilder | None = None,
        storage: Storage | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.world = world
        self.generator = generator
        self.settings = settings
        self.prompts = prompts
        self.storage = storage
        self.rng = rng
        self._tasks: dict[str, asyncio.Task[RoundResult]] = {}

    def is_running(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    def start(self, session: ConversationSession, message: str) -> asyncio.Task[RoundResult]:
        if self.is_running(session.session_id) or session.state != "idle":
            raise RoundInProgress(f"Session {session.session_id} already has a round in progress")
        task = asyncio.create_task(self._run(session, message))
        self._tasks[session.session_id] = task
        task.add_done_callback(lambda _t, sid=session.session_id: self._forget(sid, _t))
        return task

    async def run(self, session: ConversationSession, message: str) -> RoundResult:
        return await self.start(session, message)

    def cancel(self, session_id: str) -> bool:
        """Abandon the session's round in flight. Returns False if none was running."""
        task = self._tasks.get(session_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def _forget(self, session_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]

    async def _run(self, session: ConversationSession, message: str) -> RoundResult:
        try:
            return await run_round(
                session, self.world, message,
                generator=self.generator,
                settings=self.settings,
                prompts=self.prompts,
                storage=self.storage,
                rng=self.rng,
            )
        except asyncio.CancelledError:
            return RoundResult(reason="cancelled")
