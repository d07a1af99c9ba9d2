import pytest

from draftsmith.session import Session, SessionManager, SessionState, count_words, to_provider_messages


@pytest.mark.asyncio
async def test_session_manager_uses_db_path_override(tmp_path):
    db_path = tmp_path / "nested" / "sessions.db"
    manager = SessionManager(db_path=db_path)
    try:
        await manager.create_session(name="alpha")
        assert db_path.exists()
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_save_and_load_round_trip(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        created = await manager.create_session(name="alpha", chapter_id="chapter_002", chapter_title="Storm")
        created.add_message("user", "Continue")
        draft = created.add_message("assistant", "Waves.", {"applied": False, "word_count": 6})
        created.dismissed_draft_ids.add(draft["id"])
        created.metadata["preset"] = "terse"
        await manager.save_session(created)

        loaded = await manager.load_session(created.id)
        assert loaded is not None
        assert loaded.name == "alpha"
        assert loaded.chapter_id == "chapter_002"
        assert loaded.chapter_title == "Storm"
        assert loaded.messages == created.messages
        assert loaded.dismissed_draft_ids == {draft["id"]}
        assert loaded.metadata == {"preset": "terse"}
        assert loaded.state is SessionState.IDLE
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_get_or_create_reuses_latest_by_name(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        first = await manager.get_or_create_session("novel")
        again = await manager.get_or_create_session("novel")
        other = await manager.get_or_create_session("notes")
        assert again.id == first.id
        assert other.id != first.id
        assert await manager.load_session_by_name("missing") is None
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_list_and_delete_sessions(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        a = await manager.create_session(name="a")
        b = await manager.create_session(name="b")
        b.add_message("user", "latest")
        await manager.save_session(b)

        listed = await manager.list_sessions(limit=10)
        assert [s.id for s in listed][0] == b.id
        assert {s.id for s in listed} == {a.id, b.id}

        assert await manager.delete_session(a.id) is True
        assert await manager.delete_session(a.id) is False
        assert await manager.load_session(a.id) is None
    finally:
        await manager.close()


def test_session_state_controls_busy():
    session = Session(id="s1", name="t")
    assert not session.busy
    session.state = SessionState.COMPACTING
    assert session.busy
    session.state = SessionState.IDLE
    session.loading = True
    assert session.busy


def test_update_message_metadata_merges():
    session = Session(id="s1", name="t")
    message = session.add_message("assistant", "Draft", {"applied": False})
    assert session.update_message_metadata(message["id"], applied=True, summary="s")
    assert message["metadata"] == {"applied": True, "summary": "s"}
    assert session.update_message_metadata("missing", applied=True) is False


def test_to_provider_messages_keeps_chat_roles_only():
    messages = [
        {"role": "system", "content": "summary"},
        {"role": "user", "content": "hi"},
        {"role": "tool", "content": "{}"},
        {"role": "assistant", "content": None},
    ]
    converted = to_provider_messages(messages)
    assert [(m.role, m.content) for m in converted] == [("system", "summary"), ("user", "hi"), ("assistant", "")]


def test_count_words_ignores_whitespace():
    assert count_words("雨 下了。\n Rain fell.") == len("雨下了。Rainfell.")
