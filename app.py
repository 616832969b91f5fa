import json
import os
import random
import re
import threading
import uuid
import logging
import time
import base64
import qrcode
from datetime import datetime, timedelta
from io import BytesIO
from flask import Flask, jsonify, request, send_from_directory
from flask_socketio import SocketIO, join_room
from werkzeug.utils import secure_filename

from game_flow import BonusPolicy, GameFlow, GameState, InvalidTransition
from prize_wheel import InvalidSegmentSet, SegmentSet, SpinController, select_segment
from stores import JsonStore, StoreError, generate_slug, utc_now

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - [%(name)s] - %(message)s',
    handlers=[
        logging.FileHandler(os.environ.get('REVIEW_WHEEL_LOG_FILE', 'review_wheel.log')),
        logging.StreamHandler()
    ]
)

DATA_DIR = os.environ.get('REVIEW_WHEEL_DATA_DIR', 'data')
CONFIG_FILE = os.environ.get('REVIEW_WHEEL_CONFIG', 'config.json')
UPLOAD_FOLDER = os.environ.get('REVIEW_WHEEL_UPLOAD_DIR', os.path.join('static', 'logos'))
ALLOWED_IMAGE_EXTENSIONS = {'png', 'jpg', 'jpeg', 'webp', 'svg'}

EMAIL_PATTERN = re.compile(r'\S+@\S+\.\S+')
PHONE_PATTERN = re.compile(r'^[\d\s+()-]{10,}$')
SEGMENT_KINDS = {'prize', 'no-prize'}
ESTABLISHMENT_FIELDS = [
    'name', 'slug', 'address', 'google_maps_url', 'instagram_url', 'logo',
    'primary_color', 'secondary_color', 'enable_instagram_wheel'
]

DEFAULT_CONFIG = {
    'spin_duration_seconds': 5,
    'bonus_wheel_policy': BonusPolicy.WINNERS_ONLY.value,
    'rotation_jitter': True,
    'public_base_url': None,
    'max_logo_bytes': 2 * 1024 * 1024,
    'max_simulations': 10000,
    'session_timeout_minutes': 30,
}

app = Flask(__name__)
app.config.update(
    SECRET_KEY=os.environ.get('REVIEW_WHEEL_SECRET_KEY', 'review-wheel-dev-key'),
    UPLOAD_FOLDER=UPLOAD_FOLDER,
    MAX_CONTENT_LENGTH=16 * 1024 * 1024
)

os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

socketio = SocketIO(app, cors_allowed_origins="*", ping_timeout=60, ping_interval=25)
store = JsonStore(DATA_DIR)
config_lock = threading.Lock()


def load_config():
    """Load config.json merged over defaults, creating it on first run"""
    with config_lock:
        if not os.path.exists(CONFIG_FILE):
            save_config(DEFAULT_CONFIG)
            return dict(DEFAULT_CONFIG)
        try:
            with open(CONFIG_FILE, 'r', encoding='utf-8') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise json.JSONDecodeError("Invalid config format", CONFIG_FILE, 0)
            return {**DEFAULT_CONFIG, **data}
        except json.JSONDecodeError:
            logging.error(f"🚨 CORRUPTION: '{CONFIG_FILE}' corrupted. Using defaults.")
            return dict(DEFAULT_CONFIG)
        except OSError as e:
            logging.error(f"💥 IO ERROR reading '{CONFIG_FILE}': {e}")
            return dict(DEFAULT_CONFIG)


def save_config(config):
    temp_filename = f"{CONFIG_FILE}.tmp"
    try:
        with open(temp_filename, 'w', encoding='utf-8') as f:
            json.dump(config, f, indent=2, ensure_ascii=False)
        os.replace(temp_filename, CONFIG_FILE)
        return True
    except (OSError, TypeError, ValueError) as e:
        logging.error(f"💥 Save error for '{CONFIG_FILE}': {e}")
        return False


# ==============================================================================
# SPIN SCHEDULING & GAME SESSIONS
# ==============================================================================

class ScheduledTask:
    """Handle for a delayed background callback"""

    def __init__(self):
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class BackgroundTaskScheduler:
    """Delays spin completion with SocketIO's background tasks"""

    def __init__(self, socketio):
        self.socketio = socketio

    def schedule(self, delay_seconds, callback):
        task = ScheduledTask()

        def run():
            self.socketio.sleep(delay_seconds)
            if not task.cancelled:
                callback()

        self.socketio.start_background_task(run)
        return task


scheduler = BackgroundTaskScheduler(socketio)


class GameSession:
    """A participant's GameFlow plus the two wheels it spins"""

    def __init__(self, establishment, segments, config):
        self.session_id = str(uuid.uuid4())
        self.created_at = time.time()
        self.last_activity = self.created_at
        self.flow = GameFlow(establishment, store, bonus_policy=config['bonus_wheel_policy'])
        self.wheels = {
            number: SpinController(
                segments,
                scheduler=scheduler,
                duration_seconds=config['spin_duration_seconds'],
                use_jitter=config['rotation_jitter'],
                name=f"{establishment['slug']}/wheel{number}",
            )
            for number in (1, 2)
        }

    def touch(self):
        self.last_activity = time.time()

    def current_wheel_number(self):
        if self.flow.state == GameState.SPINNING_WHEEL_1:
            return 1
        if self.flow.state == GameState.SPINNING_WHEEL_2:
            return 2
        return None

    def abandon(self):
        cancelled = [w.cancel() for w in self.wheels.values()]
        return any(cancelled)

    def to_dict(self):
        return {
            'session_id': self.session_id,
            'created_at': datetime.fromtimestamp(self.created_at).isoformat(),
            'last_activity': datetime.fromtimestamp(self.last_activity).isoformat(),
            **self.flow.to_dict(),
            'wheels': {str(n): w.get_status() for n, w in self.wheels.items()},
        }


game_sessions = {}
sessions_lock = threading.Lock()


def get_game_session(session_id):
    with sessions_lock:
        game_session = game_sessions.get(session_id)
        if game_session:
            game_session.touch()
        return game_session


def prune_expired_sessions(timeout_minutes):
    """Drop sessions with no activity within the timeout, cancelling their spins"""
    cutoff = time.time() - timeout_minutes * 60
    with sessions_lock:
        expired = [sid for sid, s in game_sessions.items() if s.last_activity < cutoff]
        removed = [game_sessions.pop(sid) for sid in expired]
    for game_session in removed:
        game_session.abandon()
    if removed:
        logging.info(f"🧹 Pruned {len(removed)} expired game sessions")
    return len(removed)


def complete_session_spin(game_session, wheel_number, future):
    """Hand a finished spin over to the game flow and notify the session room"""
    if future.cancelled():
        logging.info(f"🛑 Spin on wheel {wheel_number} of session {game_session.session_id} discarded")
        return

    outcome = future.result()
    game_session.touch()
    flow = game_session.flow
    try:
        if wheel_number == 1:
            saved = flow.complete_spin_1(outcome)
        else:
            saved = flow.complete_spin_2(outcome)
    except InvalidTransition as e:
        logging.warning(f"⚠️ Spin result ignored for session {game_session.session_id}: {e}")
        return

    logging.info(f"🏆 Session {game_session.session_id} wheel {wheel_number}: "
                 f"'{outcome.segment.title}' (winner: {outcome.is_winner}, saved: {saved})")
    socketio.emit('spin_complete', {
        'wheel': wheel_number,
        'outcome': outcome.to_dict(),
        'saved': saved,
        'session': game_session.to_dict()
    }, room=game_session.session_id)


# ==============================================================================
# VALIDATION HELPERS
# ==============================================================================

def allowed_file(filename, allowed_extensions):
    """Check if file has allowed extension"""
    return '.' in filename and \
           filename.rsplit('.', 1)[1].lower() in allowed_extensions


def validate_contact_info(email, phone):
    """Form-level checks done before contact info reaches the game flow"""
    errors = {}
    if not isinstance(email, str) or not EMAIL_PATTERN.search(email.strip()):
        errors['email'] = 'A valid email address is required'
    if not isinstance(phone, str) or not PHONE_PATTERN.match(phone.strip()):
        errors['phone'] = 'A valid phone number is required'
    return errors


def validate_segment_data(data):
    """Validate one segment record"""
    if not isinstance(data, dict):
        return False, "Segment must be an object"
    for field in ['title', 'probability', 'type']:
        if field not in data:
            return False, f"Missing required field: {field}"

    if not isinstance(data['title'], str) or not data['title'].strip():
        return False, "Title must be a non-empty string"

    weight = data['probability']
    if isinstance(weight, bool) or not isinstance(weight, (int, float)) or weight < 0:
        return False, "Probability must be a non-negative number"

    if data['type'] not in SEGMENT_KINDS:
        return False, f"Type must be one of: {', '.join(sorted(SEGMENT_KINDS))}"

    return True, None


def validate_establishment_data(data):
    if not isinstance(data.get('name'), str) or not data['name'].strip():
        return False, "Name must be a non-empty string"
    if not isinstance(data.get('google_maps_url'), str) or not data['google_maps_url'].strip():
        return False, "A Google review URL is required"
    if data.get('enable_instagram_wheel') and not data.get('instagram_url'):
        return False, "An Instagram URL is required when the bonus wheel is enabled"
    return True, None


def parse_timestamp(value):
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


def get_establishment_stats(establishment_id, period_days=7, now=None):
    """Participant analytics for the admin dashboard"""
    now = now or utc_now()
    participants = store.list_participants(establishment_id)
    segments = store.load_segments(establishment_id)
    prize_titles = {s.title for s in segments if s.is_prize}

    def won(prize):
        return bool(prize) and prize in prize_titles

    dated = [(p, parse_timestamp(p.created_at)) for p in participants]
    dated = [(p, ts) for p, ts in dated if ts is not None]

    total = len(participants)
    winners = sum(1 for p in participants if won(p.prize1))
    bonus_spins = sum(1 for p in participants if p.wheel2_spun)

    daily = []
    today = now.date()
    for offset in range(period_days - 1, -1, -1):
        day = today - timedelta(days=offset)
        day_participants = [p for p, ts in dated if ts.date() == day]
        daily.append({
            'date': day.isoformat(),
            'participants': len(day_participants),
            'winners': sum(1 for p in day_participants if won(p.prize1))
        })

    current_start = now - timedelta(days=period_days)
    previous_start = current_start - timedelta(days=period_days)
    current = [p for p, ts in dated if ts >= current_start]
    previous = [p for p, ts in dated if previous_start <= ts < current_start]
    current_winners = sum(1 for p in current if won(p.prize1))
    previous_winners = sum(1 for p in previous if won(p.prize1))

    def growth(current_count, previous_count):
        if previous_count == 0:
            return 0
        return round((current_count - previous_count) / previous_count * 100)

    hourly = {}
    for _, ts in dated:
        hourly[ts.hour] = hourly.get(ts.hour, 0) + 1

    return {
        'total_participants': total,
        'winners': winners,
        'win_rate': f"{(winners / total * 100) if total else 0:.1f}",
        'bonus_spins': bonus_spins,
        'daily': daily,
        'period_comparison': {
            'period_days': period_days,
            'current_participants': len(current),
            'previous_participants': len(previous),
            'participant_growth': growth(len(current), len(previous)),
            'current_winners': current_winners,
            'previous_winners': previous_winners,
            'winner_growth': growth(current_winners, previous_winners)
        },
        'hourly': [{'hour': h, 'participants': hourly[h]} for h in sorted(hourly)]
    }


# ==============================================================================
# GAME (PARTICIPANT) ENDPOINTS
# ==============================================================================

@app.route('/api/game/<slug>')
def get_game(slug):
    """Public establishment info and wheel segments"""
    try:
        establishment = store.get_establishment_by_slug(slug)
        if not establishment:
            return jsonify({'error': 'Establishment not found'}), 404
        segments = store.load_segments(establishment['id'])
        return jsonify({
            'establishment': {
                key: establishment.get(key) for key in
                ['id', 'name', 'slug', 'logo', 'primary_color', 'secondary_color', 'enable_instagram_wheel']
            },
            'segments': segments.to_list()
        })
    except (StoreError, InvalidSegmentSet) as e:
        logging.error(f"💥 Game info error for '{slug}': {e}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/game/<slug>/sessions', methods=['POST'])
def create_game_session(slug):
    """Start a play-through for one participant"""
    try:
        establishment = store.get_establishment_by_slug(slug)
        if not establishment:
            return jsonify({'error': 'Establishment not found'}), 404

        segments = store.load_segments(establishment['id'])
        segments.validate()

        config = load_config()
        prune_expired_sessions(config['session_timeout_minutes'])
        game_session = GameSession(establishment, segments, config)
        with sessions_lock:
            game_sessions[game_session.session_id] = game_session

        logging.info(f"🎟️ Game session {game_session.session_id} started at '{slug}'")
        return jsonify(game_session.to_dict()), 201
    except InvalidSegmentSet as e:
        logging.error(f"⌘ Wheel of '{slug}' is not spinnable: {e}")
        return jsonify({'error': 'wheel_misconfigured', 'message': str(e)}), 409
    except StoreError as e:
        logging.error(f"💥 Create session error: {e}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/sessions/<session_id>')
def get_session_state(session_id):
    game_session = get_game_session(session_id)
    if not game_session:
        return jsonify({'error': 'Session not found'}), 404
    return jsonify(game_session.to_dict())


@app.route('/api/sessions/<session_id>/contact', methods=['POST'])
def submit_contact(session_id):
    """Submit email and phone; blocks anyone who already played here"""
    game_session = get_game_session(session_id)
    if not game_session:
        return jsonify({'error': 'Session not found'}), 404

    data = request.get_json(silent=True) or {}
    email, phone = data.get('email'), data.get('phone')
    errors = validate_contact_info(email, phone)
    if errors:
        return jsonify({'error': 'invalid_contact_info', 'fields': errors}), 400

    try:
        game_session.flow.submit_contact_info(email, phone)
    except InvalidTransition as e:
        return jsonify({'error': 'invalid_transition', 'message': str(e)}), 409
    return jsonify(game_session.to_dict())


@app.route('/api/sessions/<session_id>/review', methods=['POST'])
def confirm_review(session_id):
    game_session = get_game_session(session_id)
    if not game_session:
        return jsonify({'error': 'Session not found'}), 404
    try:
        game_session.flow.confirm_review()
    except InvalidTransition as e:
        return jsonify({'error': 'invalid_transition', 'message': str(e)}), 409
    return jsonify({
        **game_session.to_dict(),
        'review_url': game_session.flow.establishment.get('google_maps_url')
    })


@app.route('/api/sessions/<session_id>/spin', methods=['POST'])
def spin_session_wheel(session_id):
    """
    Spin the wheel for the current step. The outcome is decided now and
    returned with its rotation; the flow records it once the animation ends.
    """
    game_session = get_game_session(session_id)
    if not game_session:
        return jsonify({'error': 'Session not found'}), 404

    wheel_number = game_session.current_wheel_number()
    if wheel_number is None:
        return jsonify({
            'error': 'invalid_transition',
            'message': f"No wheel to spin in state '{game_session.flow.state.value}'"
        }), 409

    controller = game_session.wheels[wheel_number]
    if controller.total_spins > 0 and not controller.is_spinning:
        return jsonify({'error': 'already_spun', 'message': f"Wheel {wheel_number} was already spun"}), 409
    try:
        future = controller.spin()
    except InvalidSegmentSet as e:
        logging.error(f"⌘ Spin ABORTED for session {session_id}: {e}")
        socketio.emit('spin_error', {'message': str(e), 'error_type': 'invalid_segments'}, room=session_id)
        return jsonify({'error': 'wheel_misconfigured', 'message': str(e)}), 409

    if future is None:
        socketio.emit('spin_rejected', {
            'reason': 'wheel_busy',
            'wheel': wheel_number,
            'timestamp': datetime.now().isoformat()
        }, room=session_id)
        return jsonify({'error': 'wheel_busy', 'message': 'Wheel is currently spinning. Please wait.'}), 409

    outcome = controller.current_outcome
    spin_data = {
        'wheel': wheel_number,
        'winner_id': outcome.segment.id,
        'final_rotation': outcome.final_rotation,
        'spin_duration': int(controller.duration_seconds * 1000),
        'segments': controller.segments.to_list()
    }
    socketio.emit('spin_started', spin_data, room=session_id)
    future.add_done_callback(lambda f: complete_session_spin(game_session, wheel_number, f))
    return jsonify(spin_data)


@app.route('/api/sessions/<session_id>/continue', methods=['POST'])
def continue_after_result(session_id):
    game_session = get_game_session(session_id)
    if not game_session:
        return jsonify({'error': 'Session not found'}), 404
    try:
        game_session.flow.proceed_from_result_1()
    except InvalidTransition as e:
        return jsonify({'error': 'invalid_transition', 'message': str(e)}), 409
    return jsonify(game_session.to_dict())


@app.route('/api/sessions/<session_id>/instagram', methods=['POST'])
def confirm_instagram(session_id):
    game_session = get_game_session(session_id)
    if not game_session:
        return jsonify({'error': 'Session not found'}), 404
    try:
        game_session.flow.confirm_instagram_follow()
    except InvalidTransition as e:
        return jsonify({'error': 'invalid_transition', 'message': str(e)}), 409
    return jsonify({
        **game_session.to_dict(),
        'instagram_url': game_session.flow.establishment.get('instagram_url')
    })


@app.route('/api/sessions/<session_id>/finish', methods=['POST'])
def finish_session(session_id):
    game_session = get_game_session(session_id)
    if not game_session:
        return jsonify({'error': 'Session not found'}), 404
    try:
        game_session.flow.finish()
    except InvalidTransition as e:
        return jsonify({'error': 'invalid_transition', 'message': str(e)}), 409
    return jsonify(game_session.to_dict())


@app.route('/api/sessions/<session_id>', methods=['DELETE'])
def abandon_session(session_id):
    """Drop a session, cancelling any spin still in flight"""
    with sessions_lock:
        game_session = game_sessions.pop(session_id, None)
    if not game_session:
        return jsonify({'error': 'Session not found'}), 404
    cancelled = game_session.abandon()
    logging.info(f"👋 Game session {session_id} abandoned (spin cancelled: {cancelled})")
    return jsonify({'message': 'Session closed', 'spin_cancelled': cancelled})


# ==============================================================================
# ADMIN ENDPOINTS
# ==============================================================================

@app.route('/api/establishments', methods=['GET'])
def list_establishments():
    try:
        return jsonify({'establishments': store.list_establishments()})
    except StoreError as e:
        logging.error(f"💥 List establishments error: {e}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/establishments', methods=['POST'])
def create_establishment():
    try:
        data = request.get_json(silent=True) or {}
        is_valid, error_msg = validate_establishment_data(data)
        if not is_valid:
            return jsonify({'error': error_msg}), 400

        establishment = {key: data[key] for key in ESTABLISHMENT_FIELDS if key in data}
        establishment['name'] = establishment['name'].strip()
        establishment['enable_instagram_wheel'] = bool(establishment.get('enable_instagram_wheel', False))
        establishment['slug'] = establishment.get('slug') or generate_slug(establishment['name'])
        if store.get_establishment_by_slug(establishment['slug']):
            return jsonify({'error': 'Slug already in use'}), 409

        establishment = store.save_establishment(establishment)
        logging.info(f"🏪 Establishment created: {establishment['name']} ({establishment['slug']})")
        return jsonify({'message': 'Establishment created successfully', 'establishment': establishment}), 201
    except StoreError as e:
        logging.error(f"💥 Create establishment error: {e}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/establishments/<establishment_id>', methods=['GET'])
def get_establishment(establishment_id):
    try:
        establishment = store.get_establishment(establishment_id)
        if not establishment:
            return jsonify({'error': 'Establishment not found'}), 404
        return jsonify({
            'establishment': establishment,
            'segments': store.get_segment_records(establishment_id)
        })
    except StoreError as e:
        logging.error(f"💥 Get establishment error: {e}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/establishments/<establishment_id>', methods=['PUT'])
def update_establishment(establishment_id):
    try:
        data = request.get_json(silent=True) or {}
        establishment = store.get_establishment(establishment_id)
        if not establishment:
            return jsonify({'error': 'Establishment not found'}), 404

        updated = {**establishment, **{k: v for k, v in data.items() if k in ESTABLISHMENT_FIELDS}}
        is_valid, error_msg = validate_establishment_data(updated)
        if not is_valid:
            return jsonify({'error': error_msg}), 400

        updated['name'] = updated['name'].strip()
        updated['slug'] = updated.get('slug') or generate_slug(updated['name'])
        owner = store.get_establishment_by_slug(updated['slug'])
        if owner and owner['id'] != establishment_id:
            return jsonify({'error': 'Slug already in use'}), 409

        establishment = store.save_establishment(updated)
        logging.info(f"🏪 Establishment updated: {establishment['name']}")
        return jsonify({'message': 'Establishment updated successfully', 'establishment': establishment})
    except StoreError as e:
        logging.error(f"💥 Update establishment error: {e}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/establishments/<establishment_id>', methods=['DELETE'])
def delete_establishment(establishment_id):
    try:
        if not store.delete_establishment(establishment_id):
            return jsonify({'error': 'Establishment not found'}), 404
        logging.info(f"🗑️ Establishment deleted: {establishment_id}")
        return jsonify({'message': 'Establishment deleted successfully'})
    except StoreError as e:
        logging.error(f"💥 Delete establishment error: {e}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/establishments/<establishment_id>/segments', methods=['GET'])
def get_segments(establishment_id):
    try:
        if not store.get_establishment(establishment_id):
            return jsonify({'error': 'Establishment not found'}), 404
        records = store.get_segment_records(establishment_id)
        total = sum(float(s.get('probability', 0)) for s in records)
        return jsonify({'segments': records, 'total_probability': total})
    except StoreError as e:
        logging.error(f"💥 Get segments error: {e}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/establishments/<establishment_id>/segments', methods=['PUT'])
def replace_segments(establishment_id):
    """Replace the whole wheel of an establishment"""
    try:
        if not store.get_establishment(establishment_id):
            return jsonify({'error': 'Establishment not found'}), 404

        data = request.get_json(silent=True) or {}
        incoming = data.get('segments')
        if not isinstance(incoming, list) or not incoming:
            return jsonify({'error': 'At least one segment is required'}), 400

        records = []
        for index, segment in enumerate(incoming):
            is_valid, error_msg = validate_segment_data(segment)
            if not is_valid:
                return jsonify({'error': f"Segment {index + 1}: {error_msg}"}), 400
            records.append({
                'id': str(segment.get('id') or uuid.uuid4()),
                'title': segment['title'].strip(),
                'color': segment.get('color', '#8b5cf6'),
                'type': segment['type'],
                'probability': float(segment['probability']),
                'order': index
            })

        try:
            SegmentSet.from_records(records).validate()
        except InvalidSegmentSet as e:
            return jsonify({'error': str(e)}), 400

        store.save_segments(establishment_id, records)
        logging.info(f"🎡 Wheel updated for {establishment_id}: {len(records)} segments")
        return jsonify({'message': 'Segments saved successfully', 'segments': records})
    except StoreError as e:
        logging.error(f"💥 Save segments error: {e}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/establishments/<establishment_id>/logo', methods=['POST'])
def upload_logo(establishment_id):
    """Upload a logo image for the establishment"""
    try:
        establishment = store.get_establishment(establishment_id)
        if not establishment:
            return jsonify({'error': 'Establishment not found'}), 404

        if 'file' not in request.files:
            return jsonify({'error': 'No file provided'}), 400

        file = request.files['file']
        if file.filename == '':
            return jsonify({'error': 'No file selected'}), 400

        if not allowed_file(file.filename, ALLOWED_IMAGE_EXTENSIONS):
            return jsonify({'error': f'Invalid file type. Allowed: {", ".join(sorted(ALLOWED_IMAGE_EXTENSIONS))}'}), 400

        content = file.read()
        max_bytes = load_config()['max_logo_bytes']
        if len(content) > max_bytes:
            return jsonify({'error': f'File too large. Maximum size: {max_bytes // (1024 * 1024)}MB'}), 400

        # secure_filename('логотип.png') == 'png'
        ext = file.filename.rsplit('.', 1)[1].lower()
        filename = f"{secure_filename(establishment_id)}-{int(time.time())}.{ext}"
        with open(os.path.join(app.config['UPLOAD_FOLDER'], filename), 'wb') as f:
            f.write(content)

        establishment['logo'] = f"/logos/{filename}"
        store.save_establishment(establishment)
        logging.info(f"🖼️ Logo uploaded for {establishment['name']}: {filename}")
        return jsonify({'message': 'Logo uploaded successfully', 'url': establishment['logo']})
    except (OSError, StoreError) as e:
        logging.error(f"💥 Upload logo error: {e}")
        return jsonify({'error': str(e)}), 500


@app.route('/logos/<path:filename>')
def serve_logo(filename):
    return send_from_directory(os.path.abspath(app.config['UPLOAD_FOLDER']), filename)


@app.route('/api/establishments/<establishment_id>/qr_code')
def generate_qr_code(establishment_id):
    """QR code pointing to the establishment's game page"""
    try:
        establishment = store.get_establishment(establishment_id)
        if not establishment:
            return jsonify({'error': 'Establishment not found'}), 404

        base_url = load_config().get('public_base_url') or request.host_url
        url = f"{base_url.rstrip('/')}/game/{establishment['slug']}"

        qr = qrcode.QRCode(version=1, box_size=10, border=5)
        qr.add_data(url)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        buffer = BytesIO()
        img.save(buffer, format='PNG')
        img_str = base64.b64encode(buffer.getvalue()).decode()

        return jsonify({
            'qr_code': f"data:image/png;base64,{img_str}",
            'url': url
        })
    except StoreError as e:
        logging.error(f"💥 QR Code generation failed: {e}")
        return jsonify({'error': 'Failed to generate QR code'}), 500


@app.route('/api/establishments/<establishment_id>/stats')
def get_stats(establishment_id):
    try:
        if not store.get_establishment(establishment_id):
            return jsonify({'error': 'Establishment not found'}), 404
        period = request.args.get('period', 7, type=int)
        if period not in (7, 14, 30):
            return jsonify({'error': 'Period must be 7, 14 or 30 days'}), 400
        return jsonify(get_establishment_stats(establishment_id, period))
    except (StoreError, InvalidSegmentSet) as e:
        logging.error(f"💥 Stats error: {e}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/establishments/<establishment_id>/participants')
def list_participants(establishment_id):
    try:
        if not store.get_establishment(establishment_id):
            return jsonify({'error': 'Establishment not found'}), 404
        participants = store.list_participants(establishment_id)
        participants.sort(key=lambda p: p.created_at, reverse=True)
        return jsonify({
            'participants': [p.to_dict() for p in participants],
            'count': len(participants)
        })
    except StoreError as e:
        logging.error(f"💥 List participants error: {e}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/establishments/<establishment_id>/odds/simulate', methods=['POST'])
def simulate_spins(establishment_id):
    """Simulate multiple spins to test probability distribution"""
    try:
        if not store.get_establishment(establishment_id):
            return jsonify({'error': 'Establishment not found'}), 404

        data = request.get_json(silent=True) or {}
        try:
            requested = int(data.get('simulations', 1000))
        except (TypeError, ValueError):
            return jsonify({'error': 'simulations must be an integer'}), 400
        num_simulations = max(1, min(requested, load_config()['max_simulations']))

        segments = store.load_segments(establishment_id)
        segments.validate()

        results = {}
        for _ in range(num_simulations):
            segment = select_segment(segments, random.random)
            results[segment.id] = results.get(segment.id, 0) + 1

        total_weight = segments.total_weight
        simulation_results = []
        for segment in segments:
            count = results.get(segment.id, 0)
            simulation_results.append({
                'id': segment.id,
                'title': segment.title,
                'expected_percentage': segment.weight / total_weight * 100,
                'actual_percentage': count / num_simulations * 100,
                'count': count,
                'is_winner': segment.is_prize
            })

        return jsonify({
            'simulations': num_simulations,
            'results': simulation_results
        })
    except InvalidSegmentSet as e:
        return jsonify({'error': str(e)}), 409
    except StoreError as e:
        logging.error(f"💥 Simulation error: {e}")
        return jsonify({'error': str(e)}), 500


@app.route('/api/sessions/status')
def get_sessions_status():
    """Active game sessions, for monitoring"""
    with sessions_lock:
        sessions = list(game_sessions.values())
    return jsonify({
        'active_sessions': len(sessions),
        'spinning': sum(1 for s in sessions if any(w.is_spinning for w in s.wheels.values())),
        'timestamp': datetime.now().isoformat()
    })


# ==============================================================================
# SOCKET.IO EVENT HANDLERS
# ==============================================================================

@socketio.on('connect')
def handle_connect():
    logging.info(f"🔌 Client connected: {request.sid}")


@socketio.on('disconnect')
def handle_disconnect():
    logging.info(f"🔌 Client disconnected: {request.sid}")


@socketio.on('join_session')
def handle_join_session(data=None):
    """Subscribe the client to spin events of its game session"""
    try:
        session_id = (data or {}).get('session_id')
        game_session = get_game_session(session_id)
        if not game_session:
            socketio.emit('session_error', {'message': 'Session not found'}, room=request.sid)
            return
        join_room(session_id)
        socketio.emit('session_state', game_session.to_dict(), room=request.sid)
    except Exception as e:
        logging.error(f"💥 Join session error: {e}")


# ==============================================================================
# ERROR HANDLERS
# ==============================================================================

@app.errorhandler(500)
def internal_error(error):
    """Handle internal server errors"""
    logging.error(f"💥 Internal server error: {error}")
    return jsonify({'error': 'Internal server error', 'message': str(error)}), 500


@app.errorhandler(404)
def not_found(error):
    """Handle not found errors"""
    return jsonify({'error': 'Not found', 'message': 'Endpoint not found'}), 404


@app.errorhandler(413)
def file_too_large(error):
    """Handle file too large errors"""
    return jsonify({'error': 'File too large', 'message': 'File exceeds 16MB limit'}), 413


@app.errorhandler(400)
def bad_request(error):
    """Handle bad request errors"""
    return jsonify({'error': 'Bad request', 'message': str(error)}), 400


# ==============================================================================
# STARTUP AND INITIALIZATION
# ==============================================================================

def initialize_default_files():
    """Create config.json and the demo establishment on first run"""
    try:
        config = load_config()
        created = store.initialize_demo_data()
        logging.info(f"🔒 Configuration initialized (spin: {config['spin_duration_seconds']}s, "
                     f"bonus policy: {config['bonus_wheel_policy']}, demo data created: {created})")
    except StoreError as e:
        logging.error(f"💥 File initialization error: {e}")


if __name__ == '__main__':
    try:
        initialize_default_files()

        logging.info("🎡 REVIEW WHEEL 🎡")
        logging.info("=" * 60)
        logging.info(f"🎮 Game:          http://0.0.0.0:5000/api/game/<slug>")
        logging.info(f"🏪 Establishments: http://0.0.0.0:5000/api/establishments")
        logging.info(f"📁 Data dir:      {os.path.abspath(DATA_DIR)}")
        logging.info("=" * 60)

        socketio.run(app, host='0.0.0.0', port=5000,
                     debug=False, allow_unsafe_werkzeug=True)

    except KeyboardInterrupt:
        logging.info("🛑 Server shutdown requested")
