import base64

from ember_chat.transcript import (
    Attachment,
    Author,
    Transcript,
    TranscriptEventKind,
)


def _recording(transcript):
    events = []
    transcript.subscribe(events.append)
    return events


class TestTranscript:
    def test_append_keeps_order_and_notifies(self):
        transcript = Transcript()
        events = _recording(transcript)

        user = transcript.append(Author.USER, "hi")
        bot = transcript.append(Author.ASSISTANT)

        assert [turn.id for turn in transcript] == [user.id, bot.id]
        assert [event.kind for event in events] == [
            TranscriptEventKind.APPENDED,
            TranscriptEventKind.APPENDED,
        ]
        assert events[1].index == 1

    def test_append_text_grows_last_turn(self):
        transcript = Transcript()
        transcript.append(Author.USER, "hi")
        bot = transcript.append(Author.ASSISTANT)
        events = _recording(transcript)

        assert transcript.append_text(bot.id, "Hel")
        assert transcript.append_text(bot.id, "lo")

        assert transcript.last.text == "Hello"
        assert [event.delta for event in events] == ["Hel", "lo"]
        assert all(event.kind is TranscriptEventKind.UPDATED for event in events)

    def test_append_text_ignores_turn_that_is_not_last(self):
        transcript = Transcript()
        first = transcript.append(Author.ASSISTANT)
        transcript.append(Author.USER, "later")

        assert not transcript.append_text(first.id, "late data")
        assert first.text == ""

    def test_append_text_after_clear_is_dropped(self):
        transcript = Transcript()
        bot = transcript.append(Author.ASSISTANT)
        transcript.clear()

        assert not transcript.append_text(bot.id, "x")
        assert len(transcript) == 0

    def test_empty_delta_is_noop(self):
        transcript = Transcript()
        bot = transcript.append(Author.ASSISTANT)
        events = _recording(transcript)
        assert not transcript.append_text(bot.id, "")
        assert events == []

    def test_remove_and_clear_notify(self):
        transcript = Transcript()
        user = transcript.append(Author.USER, "a")
        events = _recording(transcript)

        assert transcript.remove(user.id) is user
        assert transcript.remove(user.id) is None
        transcript.append(Author.USER, "b")
        transcript.clear()

        kinds = [event.kind for event in events]
        assert kinds == [
            TranscriptEventKind.REMOVED,
            TranscriptEventKind.APPENDED,
            TranscriptEventKind.CLEARED,
        ]

    def test_clear_on_empty_transcript_is_silent(self):
        transcript = Transcript()
        events = _recording(transcript)
        transcript.clear()
        assert events == []

    def test_unsubscribe(self):
        transcript = Transcript()
        events = []
        unsubscribe = transcript.subscribe(events.append)
        unsubscribe()
        unsubscribe()
        transcript.append(Author.USER, "x")
        assert events == []

    def test_turns_snapshot_is_tuple(self):
        transcript = Transcript()
        transcript.append(Author.USER, "x", [Attachment(b"img", "a.png")])
        turns = transcript.turns
        assert isinstance(turns, tuple)
        assert turns[0].attachments[0].file_name == "a.png"
        assert turns[0].is_user


class TestAttachment:
    def test_base64(self):
        attachment = Attachment(b"\x89PNG", "pic.png")
        assert base64.b64decode(attachment.to_base64()) == b"\x89PNG"

    def test_ids_are_unique(self):
        assert Attachment(b"a").id != Attachment(b"a").id
