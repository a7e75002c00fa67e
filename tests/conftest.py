import pytest

from app import create_app, db


@pytest.fixture
def app():
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'HOST': 'localhost',
        'PORT': 3000,
        'RAILWAY_PUBLIC_DOMAIN': None,
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def register(client):
    def _register(name=None):
        payload = {} if name is None else {'name': name}
        return client.post('/api/register', json=payload)
    return _register
