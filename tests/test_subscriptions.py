import pytest

from conftest import make_sub
from jsondb import JsonFileDb
from subscriptions import (
    DuplicateSubscriptionError,
    JsonSubscriptionStore,
    MemorySubscriptionStore,
    new_subscription,
    validate_target_number,
)


@pytest.fixture(params=["json", "memory"])
def store(request, tmp_path):
    if request.param == "json":
        return JsonSubscriptionStore(JsonFileDb(str(tmp_path / "subscriptions.json")))
    return MemorySubscriptionStore()


def test_add_then_find(store):
    sub = make_sub()
    assert store.add(sub) == sub
    assert store.find(sub.chat_id, sub.user_id) == sub
    assert store.find(sub.chat_id, 12345) is None


def test_duplicate_pair_is_rejected_and_store_keeps_one(store):
    store.add(make_sub(target=1050))
    with pytest.raises(DuplicateSubscriptionError) as exc:
        store.add(make_sub(target=1060))
    assert exc.value.existing.target_number == 1050
    assert [s.target_number for s in store.list_all()] == [1050]


def test_same_user_in_another_chat_is_separate(store):
    store.add(make_sub(chat_id=1))
    store.add(make_sub(chat_id=2))
    assert len(store.list_all()) == 2


def test_remove_returns_removed_or_none(store):
    store.add(make_sub(user_id=1))
    store.add(make_sub(user_id=2))
    removed = store.remove(1, 1)
    assert removed.user_id == 1
    assert store.remove(1, 1) is None
    assert [s.user_id for s in store.list_all()] == [2]


def test_json_store_rereads_file_written_by_another_instance(tmp_path):
    path = str(tmp_path / "subscriptions.json")
    a = JsonSubscriptionStore(JsonFileDb(path))
    b = JsonSubscriptionStore(JsonFileDb(path))
    a.add(make_sub())
    assert b.find(1, 10) is not None


def test_json_store_record_layout(tmp_path):
    db = JsonFileDb(str(tmp_path / "subscriptions.json"))
    JsonSubscriptionStore(db).add(make_sub())
    (record,) = db.get("subscriptions")
    assert set(record) == {"chat_id", "user_id", "first_name", "target_number", "created_at", "message_id"}


def test_new_subscription_stamps_creation_time():
    sub = new_subscription(1, 2, "Ann", 1100, 7, clock=lambda: 123)
    assert sub.created_at == 123
    assert sub.message_id == 7


@pytest.mark.parametrize(
    "value, expected",
    [
        ("1050", None),
        (1050, None),
        ("abc", "not_int"),
        ("10.5", "not_int"),
        (None, "not_int"),
        ("1000", "out_of_range"),
        ("1201", "out_of_range"),
        ("01050", None),
        ("1_050", "not_int"),
        ("１０５０", "not_int"),
        ("-5", "not_int"),
        (" 1050 ", None),
        ("1030", "already_passed"),
        ("1040", "already_passed"),
    ],
)
def test_validate_target_number(value, expected):
    assert validate_target_number(value, 1040, 1001, 1200) == expected
