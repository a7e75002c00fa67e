from concurrent.futures import ThreadPoolExecutor

from app import MAX_PARTICIPANTS, Participant, create_app, db


def test_numbers_are_sequential_from_one(register, client):
    numbers = [register(name).get_json()['number'] for name in ('Alice', 'Bob', 'Carol')]

    assert numbers == [1, 2, 3]
    assert client.get('/api/count').get_json() == {'count': 3, 'max': 60}


def test_register_response(register):
    response = register('Alice')

    assert response.status_code == 200
    assert response.get_json() == {
        'success': True,
        'number': 1,
        'message': 'You are registered with number 1',
    }


def test_default_name_uses_number(register, client):
    register()
    register('   ')
    client.post('/api/register', json={'name': None})

    names = [p['name'] for p in client.get('/api/participants').get_json()]
    assert names == ['Participant 1', 'Participant 2', 'Participant 3']


def test_register_without_json_body(client):
    response = client.post('/api/register')

    assert response.status_code == 200
    assert response.get_json()['number'] == 1


def test_participants_listed_by_number(register, client):
    for name in ('Alice', 'Bob', 'Carol'):
        register(name)

    participants = client.get('/api/participants').get_json()

    assert [p['number'] for p in participants] == [1, 2, 3]
    assert [p['name'] for p in participants] == ['Alice', 'Bob', 'Carol']
    assert set(participants[0]) == {'id', 'number', 'name', 'registered_at'}
    assert participants[0]['registered_at'] is not None


def test_capacity_limit(register, client):
    for _ in range(MAX_PARTICIPANTS - 1):
        register()

    last = register('Last one')
    assert last.status_code == 200
    assert last.get_json()['number'] == MAX_PARTICIPANTS

    rejected = register('Too late')
    assert rejected.status_code == 400
    assert rejected.get_json() == {'error': 'Participant limit reached (60)'}
    assert client.get('/api/count').get_json()['count'] == MAX_PARTICIPANTS


def test_taken_number_is_reported(app, register):
    with app.app_context():
        db.session.add(Participant(number=2, name='Squatter'))
        db.session.commit()

    # one row exists, so the next number is 2, which is already taken
    response = register('Bob')

    assert response.status_code == 400
    assert response.get_json() == {'error': 'Number already taken'}


def test_reset_clears_and_restarts_numbering(register, client):
    register('Alice')
    register('Bob')

    response = client.post('/api/reset')

    assert response.get_json() == {'success': True, 'message': 'Database cleared'}
    assert client.get('/api/participants').get_json() == []
    assert register('Carol').get_json()['number'] == 1


def test_storage_failure_returns_500(app, client):
    with app.app_context():
        db.drop_all()

    response = client.get('/api/count')

    assert response.status_code == 500
    assert response.get_json() == {'error': 'Database error'}


def test_pages_are_served(client):
    for path in ('/', '/results', '/register'):
        response = client.get(path)
        assert response.status_code == 200
        assert b'<html' in response.data


def test_register_with_non_object_body(client):
    response = client.post('/api/register', data='["Alice"]', content_type='application/json')

    assert response.status_code == 200
    assert response.get_json()['number'] == 1
    participants = client.get('/api/participants').get_json()
    assert [p['name'] for p in participants] == ['Participant 1']


def test_concurrent_registrations_get_distinct_numbers(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'raffle.db'}",
        'HOST': 'localhost',
    })

    def register_one(i):
        return app.test_client().post('/api/register', json={'name': f'Guest {i}'})

    try:
        with ThreadPoolExecutor(max_workers=20) as pool:
            responses = list(pool.map(register_one, range(40)))

        assert all(r.status_code == 200 for r in responses)
        numbers = sorted(r.get_json()['number'] for r in responses)
        assert numbers == list(range(1, 41))
        with app.app_context():
            assert sorted(p.number for p in Participant.query.all()) == list(range(1, 41))
    finally:
        with app.app_context():
            db.session.remove()
            db.drop_all()
            db.engine.dispose()
