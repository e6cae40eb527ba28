"""Unit tests for the document stores."""

from unittest.mock import MagicMock

from pymongo import ReturnDocument

from edusense.store import InMemoryStore, MongoStore


def test_in_memory_upsert_inserts_then_updates():
    store = InMemoryStore()

    created = store.find_one_and_upsert('fees', {'student_ref': 's1', 'year': 2025}, {'amount': 10.0})
    updated = store.find_one_and_upsert('fees', {'student_ref': 's1', 'year': 2025}, {'amount': 20.0})

    assert created['id'] == updated['id']
    assert updated['amount'] == 20.0
    assert updated['student_ref'] == 's1'
    assert store.count('fees') == 1


def test_in_memory_returns_copies():
    store = InMemoryStore()
    document = store.create('students', {'student_id': 'STU001', 'tags': ['a']})

    document['tags'].append('b')

    assert store.find_by_id('students', document['id'])['tags'] == ['a']


def test_in_memory_find_filters_sorts_and_limits():
    """Test multi-key sort with missing values last."""
    store = InMemoryStore()
    store.create('attendance', {'subject': 'Maths', 'month': 2})
    store.create('attendance', {'subject': 'Physics', 'month': 3})
    store.create('attendance', {'subject': 'Maths', 'month': 5})
    store.create('attendance', {'subject': 'Maths', 'month': None})

    maths = store.find('attendance', {'subject': 'Maths'}, sort=[('month', -1)])
    assert [d['month'] for d in maths] == [5, 2, None]

    ordered = store.find('attendance', sort=[('subject', 1), ('month', 1)], limit=3)
    assert [(d['subject'], d['month']) for d in ordered] == [('Maths', 2), ('Maths', 5), ('Maths', None)]


def test_in_memory_filter_by_id_and_missing_update():
    store = InMemoryStore()
    document = store.create('students', {'student_id': 'STU001'})

    assert store.find_one('students', {'id': document['id']})['student_id'] == 'STU001'
    assert store.update_by_id('students', 'missing', {'name': 'x'}) is None
    assert store.find_one('students', {'student_id': 'nope'}) is None


def test_mongo_store_maps_ids():
    """Test documents come back with ``id`` instead of ``_id``."""
    database = MagicMock()
    collection = database.__getitem__.return_value
    collection.find_one.return_value = {'_id': 'abc', 'student_id': 'STU001'}
    collection.find_one_and_update.return_value = {'_id': 'abc', 'student_id': 'STU001', 'name': 'Asha'}
    store = MongoStore(database)

    assert store.find_one('students', {'id': 'abc'}) == {'id': 'abc', 'student_id': 'STU001'}
    collection.find_one.assert_called_with({'_id': 'abc'})

    stored = store.find_one_and_upsert('students', {'student_id': 'STU001'}, {'name': 'Asha'})

    assert stored['id'] == 'abc'
    args, kwargs = collection.find_one_and_update.call_args
    assert args[0] == {'student_id': 'STU001'}
    assert args[1]['$set'] == {'name': 'Asha'}
    assert '_id' in args[1]['$setOnInsert']
    assert kwargs['upsert'] is True
    assert kwargs['return_document'] == ReturnDocument.AFTER


def test_mongo_store_create_assigns_string_id():
    database = MagicMock()
    collection = database.__getitem__.return_value
    store = MongoStore(database)

    created = store.create('notifications', {'message': 'hi'})

    inserted = collection.insert_one.call_args[0][0]
    assert isinstance(inserted['_id'], str)
    assert created == {'id': inserted['_id'], 'message': 'hi'}


def test_in_memory_insert_if_absent_keeps_existing():
    store = InMemoryStore()

    inserted, created = store.insert_if_absent('students', {'student_id': 'STU001'}, {'name': 'Student STU001'})
    store.update_by_id('students', inserted['id'], {'name': 'Asha Rao'})
    again, created_again = store.insert_if_absent('students', {'student_id': 'STU001'}, {'name': 'Student STU001'})

    assert created is True
    assert inserted['student_id'] == 'STU001'
    assert created_again is False
    assert again['id'] == inserted['id']
    assert again['name'] == 'Asha Rao'
    assert store.count('students') == 1


def test_mongo_insert_if_absent_uses_set_on_insert():
    """Test a match is never written to, only a fresh insert sets fields."""
    database = MagicMock()
    collection = database.__getitem__.return_value
    collection.update_one.return_value.upserted_id = None
    collection.find_one.return_value = {'_id': 'abc', 'student_id': 'STU001', 'name': 'Asha Rao'}
    store = MongoStore(database)

    document, created = store.insert_if_absent('students', {'student_id': 'STU001'},
                                               {'student_id': 'STU001', 'name': 'Student STU001'})

    assert created is False
    assert document == {'id': 'abc', 'student_id': 'STU001', 'name': 'Asha Rao'}
    args, kwargs = collection.update_one.call_args
    assert args[0] == {'student_id': 'STU001'}
    assert set(args[1]) == {'$setOnInsert'}
    assert args[1]['$setOnInsert']['name'] == 'Student STU001'
    assert 'student_id' not in args[1]['$setOnInsert']
    assert kwargs['upsert'] is True
