"""Unit tests for the help request channel."""
import pytest

from smartassist.core.errors import ConflictError, NotFoundError, ValidationError
from smartassist.domain.dashboard import Table
from smartassist.domain.student import HelpStatus


pytestmark = pytest.mark.anyio


class TestCreate:

    async def test_blank_message_rejected(self, help_channel, store):
        with pytest.raises(ValidationError):
            await help_channel.create("S1", "  ")

        assert store.count(Table.HELP_REQUESTS) == 0

    async def test_create_is_pending(self, help_channel):
        request = await help_channel.create("S1", "My loop never ends ")

        assert request.status == HelpStatus.PENDING.value
        assert request.is_pending
        assert request.message == "My loop never ends"
        assert request.teacher_id is None

    async def test_for_student_newest_first(self, help_channel):
        await help_channel.create("S1", "first")
        await help_channel.create("S1", "second")
        await help_channel.create("S2", "elsewhere")

        mine = await help_channel.for_student("S1")

        assert [r.message for r in mine] == ["second", "first"]


class TestRespond:

    async def test_respond_sets_all_fields(self, help_channel):
        request = await help_channel.create("S1", "Why is x undefined?")

        answered = await help_channel.respond(request.id, "T1", "Declare it with let first.")

        assert answered.response == "Declare it with let first."
        assert answered.teacher_id == "T1"
        assert answered.status == HelpStatus.RESPONDED.value
        assert answered.responded_at is not None
        assert not answered.is_pending

    async def test_respond_missing_request(self, help_channel):
        with pytest.raises(NotFoundError):
            await help_channel.respond("missing", "T1", "hello")

    async def test_blank_response_rejected(self, help_channel):
        request = await help_channel.create("S1", "help")

        with pytest.raises(ValidationError):
            await help_channel.respond(request.id, "T1", "")

        assert (await help_channel.get(request.id)).is_pending

    async def test_last_write_wins(self, help_channel):
        request = await help_channel.create("S1", "help")

        await help_channel.respond(request.id, "T1", "first answer")
        await help_channel.respond(request.id, "T2", "second answer")

        final = await help_channel.get(request.id)
        assert final.response == "second answer"
        assert final.teacher_id == "T2"

    async def test_stale_expected_updated_at_conflicts(self, help_channel):
        request = await help_channel.create("S1", "help")

        await help_channel.respond(request.id, "T1", "first", expected_updated_at=request.updated_at)

        with pytest.raises(ConflictError):
            await help_channel.respond(request.id, "T2", "second", expected_updated_at=request.updated_at)
        assert (await help_channel.get(request.id)).response == "first"

    async def test_pending_lists_unanswered(self, help_channel):
        open_request = await help_channel.create("S1", "open")
        answered = await help_channel.create("S2", "answered")
        await help_channel.respond(answered.id, "T1", "done")

        pending = await help_channel.pending()

        assert [r.id for r in pending] == [open_request.id]
