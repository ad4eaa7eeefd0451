from outreach_app.engine.identity import IdentityMatcher, MatchKey, normalize_email, normalize_phone
from outreach_app.store.tables import MEMBERS
from tests.fakes import FakeRecordStore


def test_normalize_phone_strips_formatting():
    assert normalize_phone(" 024 400-0111 ") == "0244000111"
    assert normalize_phone("+233 (24) 400 0111") == "+233244000111"
    assert normalize_phone("n/a") is None
    assert normalize_phone("") is None
    assert normalize_phone(None) is None


def test_normalize_email_trims_and_lowercases():
    assert normalize_email("  Ama.Mensah@Example.COM ") == "ama.mensah@example.com"
    assert normalize_email("   ") is None


def test_match_key_lock_keys_are_sorted():
    key = MatchKey.from_contact("024 400 0111", "Ama@Example.com")
    assert key.lock_keys() == ("email:ama@example.com", "phone:0244000111")
    assert MatchKey().is_empty
    assert MatchKey().lock_keys() == ()


def test_matcher_finds_single_person_by_phone_or_email():
    store = FakeRecordStore()
    person = store.seed(MEMBERS, {"Phone": "0244000111", "Email": "ama@example.com"})

    matcher = IdentityMatcher(store)

    by_phone = matcher.find(MatchKey(phone="0244000111"))
    by_email = matcher.find(MatchKey(email="ama@example.com"))
    assert by_phone.outcome == "matched" and by_phone.person.id == person.id
    assert by_email.outcome == "matched" and by_email.person.id == person.id
    assert store.calls["list:Members"] == 2


def test_matcher_reports_none_and_insufficient():
    store = FakeRecordStore()
    matcher = IdentityMatcher(store)

    assert matcher.find(MatchKey(phone="0200000000")).outcome == "none"
    assert matcher.find(MatchKey()).outcome == "insufficient"
    assert store.calls["list"] == 1


def test_matcher_flags_conflict_when_phone_and_email_hit_different_people():
    store = FakeRecordStore()
    first = store.seed(MEMBERS, {"Phone": "0244000111"})
    second = store.seed(MEMBERS, {"Email": "ama@example.com"})

    result = IdentityMatcher(store).find(MatchKey(phone="0244000111", email="ama@example.com"))

    assert result.is_conflict
    assert result.person is None
    assert result.candidate_ids == tuple(sorted([first.id, second.id]))


def test_matcher_collapses_same_person_matched_by_both_keys():
    store = FakeRecordStore()
    person = store.seed(MEMBERS, {"Phone": "0244000111", "Email": "ama@example.com"})

    result = IdentityMatcher(store).find(MatchKey(phone="0244000111", email="ama@example.com"))

    assert result.outcome == "matched"
    assert result.candidate_ids == (person.id,)
