"""
Raffle QR
A raffle registration service for live events.
Guests scan a QR code, get a sequential number, and the host draws winners.
"""

import os
import io
import base64
import random
import socket
import logging
import ipaddress
import threading
from datetime import datetime, timezone
from urllib.parse import urlsplit

import qrcode
from dotenv import load_dotenv
from flask import Blueprint, Flask, current_app, jsonify, render_template, request
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tunnel import TunnelSupervisor, should_start_tunnel

logger = logging.getLogger(__name__)

MAX_PARTICIPANTS = 60
DEFAULT_DRAW_COUNT = 10

db = SQLAlchemy()
bp = Blueprint('raffle', __name__)

# Count-then-insert must not interleave between request threads
_registration_lock = threading.Lock()

# =============================================================================
# Configuration
# =============================================================================
def get_local_ip():
    """Return the LAN address other devices can reach, or 'localhost'."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # connect() on a UDP socket only selects a route, nothing is sent
        sock.connect(('10.255.255.255', 1))
        ip = sock.getsockname()[0]
    except OSError:
        return 'localhost'
    finally:
        sock.close()
    if not ip or ip.startswith('127.') or ip == '0.0.0.0':
        return 'localhost'
    return ip


def load_settings(environ=None):
    """Read service settings from the environment."""
    environ = os.environ if environ is None else environ

    database_url = environ.get('DATABASE_URL', 'sqlite:///raffle.db')
    # Hosting platforms hand out postgres:// but SQLAlchemy needs postgresql://
    if database_url.startswith('postgres://'):
        database_url = database_url.replace('postgres://', 'postgresql://', 1)

    return {
        'PORT': int(environ.get('PORT', 3000)),
        'HOST': environ.get('HOST') or get_local_ip(),
        'NODE_ENV': environ.get('NODE_ENV', 'development'),
        'PUBLIC': environ.get('PUBLIC', ''),
        'TUNNEL_TYPE': environ.get('TUNNEL_TYPE', 'cloudflared'),
        'TUNNEL_SUBDOMAIN': environ.get('TUNNEL_SUBDOMAIN') or None,
        'RAILWAY_PUBLIC_DOMAIN': environ.get('RAILWAY_PUBLIC_DOMAIN') or None,
        'SQLALCHEMY_DATABASE_URI': database_url,
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    }

# =============================================================================
# Errors
# =============================================================================
class RaffleError(Exception):
    """Base error rendered as a JSON error body."""
    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class StorageUnavailable(RaffleError):
    status_code = 500


class CapacityExceeded(RaffleError):
    pass


class DuplicateNumber(RaffleError):
    pass


class InsufficientParticipants(RaffleError):
    pass


class InvalidDrawCount(RaffleError):
    pass

# =============================================================================
# Database Models
# =============================================================================
class Participant(db.Model):
    """A guest registered for the raffle."""
    __tablename__ = 'participants'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    number = db.Column(db.Integer, unique=True, nullable=False)
    registered_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    name = db.Column(db.Text)

    def to_dict(self):
        return {
            'id': self.id,
            'number': self.number,
            'name': self.name,
            'registered_at': self.registered_at.isoformat() if self.registered_at else None,
        }

# =============================================================================
# Raffle Operations
# =============================================================================
def register_participant(name=None):
    """Assign the next free number to a new participant."""
    with _registration_lock:
        try:
            current_count = Participant.query.count()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error('Could not count participants: %s', exc)
            raise StorageUnavailable('Database error') from exc

        if current_count >= MAX_PARTICIPANTS:
            raise CapacityExceeded(f'Participant limit reached ({MAX_PARTICIPANTS})')

        next_number = current_count + 1
        participant = Participant(number=next_number, name=name or f'Participant {next_number}')
        db.session.add(participant)
        try:
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            logger.warning('Number %s was already taken', next_number)
            raise DuplicateNumber('Number already taken') from exc
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error('Could not register participant: %s', exc)
            raise StorageUnavailable('Registration failed') from exc

    logger.info('Registered %r as number %s', participant.name, next_number)
    return {
        'number': next_number,
        'message': f'You are registered with number {next_number}',
    }


def list_participants():
    """All participants ordered by their number."""
    try:
        return Participant.query.order_by(Participant.number).all()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error('Could not load participants: %s', exc)
        raise StorageUnavailable('Could not load participants') from exc


def count_participants():
    try:
        count = Participant.query.count()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error('Could not count participants: %s', exc)
        raise StorageUnavailable('Database error') from exc
    return {'count': count, 'max': MAX_PARTICIPANTS}


def reset_participants():
    """Delete every participant so numbering starts again from 1."""
    try:
        deleted = Participant.query.delete()
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error('Could not reset participants: %s', exc)
        raise StorageUnavailable('Reset failed') from exc
    logger.info('Removed %s participants', deleted)
    return deleted


def parse_draw_count(value):
    """Interpret the requested number of winners, falling back to the default."""
    if isinstance(value, bool):
        return DEFAULT_DRAW_COUNT
    try:
        count = int(value)
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_DRAW_COUNT
    if count == 0:
        return DEFAULT_DRAW_COUNT
    if count < 0:
        raise InvalidDrawCount('Winner count must be a positive number')
    return count


def draw_winners(participants, count, rng=None):
    """
    Pick `count` distinct participants uniformly at random.

    random.shuffle is a Fisher-Yates shuffle, so every ordering of the
    participants is equally likely and the first `count` are a uniform sample.
    """
    if len(participants) < count:
        raise InsufficientParticipants(
            f'Not enough participants. Registered: {len(participants)}, required: {count}'
        )
    shuffled = list(participants)
    (rng or random).shuffle(shuffled)
    return shuffled[:count]


def run_draw(count, rng=None):
    """Draw winners from everyone registered. Nothing is written back."""
    participants = list_participants()
    winners = draw_winners(participants, count, rng=rng)
    logger.info('Drew %s winners from %s participants', len(winners), len(participants))
    return {
        'winners': [p.to_dict() for p in winners],
        'total': len(participants),
        'selected': count,
    }

# =============================================================================
# Public URL & QR Code
# =============================================================================
def resolve_registration_url(public_domain=None, host=None, forwarded_proto=None,
                             secure=False, tunnel_url=None, local_host='localhost',
                             port=3000):
    """Pick the registration URL to embed in the QR code. First signal wins."""
    if public_domain:
        return f'https://{public_domain}/register'
    if host:
        protocol = forwarded_proto.split(',')[0].strip() if forwarded_proto else ''
        if not protocol:
            protocol = 'https' if secure else 'http'
        return f'{protocol}://{host}/register'
    if tunnel_url:
        return f"{tunnel_url.rstrip('/')}/register"
    return f'http://{local_host}:{port}/register'


def is_public_url(url):
    """False when the URL points at localhost or a loopback address."""
    hostname = urlsplit(url).hostname
    if not hostname or hostname == 'localhost':
        return False
    try:
        return not ipaddress.ip_address(hostname).is_loopback
    except ValueError:
        return True


def generate_qr_code(data):
    """Generate a QR code as base64 string."""
    qr = qrcode.QRCode(version=1, box_size=10, border=2)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    return base64.b64encode(buffer.getvalue()).decode()


def json_body():
    """The request JSON object, or an empty dict for anything else."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def current_tunnel_url():
    tunnel = current_app.extensions.get('tunnel')
    return tunnel.public_url if tunnel else None

# =============================================================================
# Routes - Pages
# =============================================================================
@bp.route('/')
def index():
    """Display screen with the registration QR code."""
    return render_template('index.html', max_participants=MAX_PARTICIPANTS)


@bp.route('/results')
def results():
    """Draw screen for the host."""
    return render_template('results.html')


@bp.route('/register')
def register_page():
    """Registration form opened from the QR code."""
    return render_template('register.html')

# =============================================================================
# API Routes
# =============================================================================
@bp.route('/api/qrcode')
def qrcode_api():
    """QR code pointing at the registration page."""
    registration_url = resolve_registration_url(
        public_domain=current_app.config.get('RAILWAY_PUBLIC_DOMAIN'),
        host=request.host,
        forwarded_proto=request.headers.get('X-Forwarded-Proto'),
        secure=request.is_secure,
        tunnel_url=current_tunnel_url(),
        local_host=current_app.config.get('HOST', 'localhost'),
        port=current_app.config.get('PORT', 3000),
    )
    logger.info('Generating QR code for %s', registration_url)
    try:
        qr_code = generate_qr_code(registration_url)
    except Exception:
        logger.exception('QR code generation failed')
        return jsonify({'error': 'Could not generate QR code'}), 500

    return jsonify({
        'qrcode': f'data:image/png;base64,{qr_code}',
        'url': registration_url,
        'isPublic': is_public_url(registration_url),
    })


@bp.route('/api/register', methods=['POST'])
def register():
    """Register a participant under the next number."""
    data = json_body()
    name = data.get('name')
    name = str(name).strip() if name is not None else ''
    result = register_participant(name or None)
    return jsonify({'success': True, **result})


@bp.route('/api/participants')
def participants():
    return jsonify([p.to_dict() for p in list_participants()])


@bp.route('/api/count')
def count():
    return jsonify(count_participants())


@bp.route('/api/raffle', methods=['POST'])
def raffle():
    """Draw winners among all registered participants."""
    data = json_body()
    winner_count = parse_draw_count(data.get('count'))
    return jsonify(run_draw(winner_count, rng=current_app.extensions.get('raffle_rng')))


@bp.route('/api/reset', methods=['POST'])
def reset():
    """Clear all participants (for testing between events)."""
    reset_participants()
    return jsonify({'success': True, 'message': 'Database cleared'})


@bp.app_errorhandler(RaffleError)
def handle_raffle_error(error):
    return jsonify({'error': error.message}), error.status_code

# =============================================================================
# Initialize Application
# =============================================================================
def create_app(config=None, tunnel=None):
    """Build the Flask app, optionally wired to a running tunnel supervisor."""
    app = Flask(__name__)
    app.config.update(load_settings())
    if config:
        app.config.update(config)

    CORS(app)
    db.init_app(app)
    app.register_blueprint(bp)
    app.extensions['tunnel'] = tunnel

    with app.app_context():
        db.create_all()

    return app


def log_startup_banner(settings):
    """Tell the operator where the service can be reached."""
    port = settings['PORT']
    logger.info('========================================')
    if settings['NODE_ENV'] == 'production':
        logger.info('Server running in production on port %s', port)
        logger.info('The app is reachable through the hosting public URL')
    else:
        logger.info('Server running at http://localhost:%s', port)
        logger.info('Other devices: http://%s:%s', settings['HOST'], port)
    logger.info('Results page: /results')
    logger.info('========================================')

# =============================================================================
# Run Application
# =============================================================================
def main():
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    settings = load_settings()

    tunnel = None
    if should_start_tunnel(settings['PUBLIC'], settings['NODE_ENV']):
        tunnel = TunnelSupervisor(
            settings['PORT'],
            backend=settings['TUNNEL_TYPE'],
            subdomain=settings['TUNNEL_SUBDOMAIN'],
        )

    app = create_app(tunnel=tunnel)
    log_startup_banner(settings)

    if tunnel is not None:
        tunnel.start()
    elif settings['HOST'] == 'localhost':
        logger.info('For access over the internet start with PUBLIC=true, '
                    'guests can then scan the QR code on mobile data')

    try:
        app.run(host='0.0.0.0', port=settings['PORT'])
    finally:
        if tunnel is not None:
            tunnel.stop()


if __name__ == '__main__':
    main()
