import json
import logging
import os
import re
import shutil
import threading
import unicodedata
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

from prize_wheel import SegmentSet

ESTABLISHMENTS_FILE = 'establishments.json'
SEGMENTS_FILE = 'segments.json'
PARTICIPANTS_FILE = 'participants.json'

# Files that get a timestamped backup before every overwrite
BACKED_UP_FILES = {ESTABLISHMENTS_FILE, SEGMENTS_FILE}


class StoreError(Exception):
    """Raised when the backing store cannot be read or written"""


def utc_now():
    """Naive UTC timestamp, the form participant records are stored in"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_now_iso():
    return utc_now().isoformat()


@dataclass
class ParticipantEntry:
    establishment_id: str
    email: str
    phone: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=utc_now_iso)
    wheel1_spun: bool = False
    wheel2_spun: bool = False
    prize1: Optional[str] = None
    prize2: Optional[str] = None

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class ParticipantStore(ABC):

    @abstractmethod
    def find_by_email(self, establishment_id, email):
        """Participant of this establishment with the same email (case-insensitive), or None"""

    @abstractmethod
    def find_by_phone(self, establishment_id, phone):
        """Participant of this establishment with exactly this phone, or None"""

    @abstractmethod
    def save(self, entry):
        """Insert or update the entry; raises StoreError on failure"""

    @abstractmethod
    def list_participants(self, establishment_id):
        pass


class SegmentStore(ABC):

    @abstractmethod
    def load_segments(self, establishment_id):
        """SegmentSet configured for the establishment"""


def generate_slug(name):
    """URL-friendly slug: 'Café de la Gare' -> 'cafe-de-la-gare'"""
    normalized = unicodedata.normalize('NFD', name.lower())
    stripped = ''.join(c for c in normalized if not unicodedata.combining(c))
    return re.sub(r'[^a-z0-9]+', '-', stripped).strip('-')


class JsonStore(ParticipantStore, SegmentStore):
    """
    Establishments, segments and participants kept in JSON files
    under `data_dir`, with atomic writes and corruption recovery.
    """

    def __init__(self, data_dir):
        self.data_dir = data_dir
        self._lock = threading.RLock()
        os.makedirs(data_dir, exist_ok=True)

    def _path(self, filename):
        return os.path.join(self.data_dir, filename)

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    def create_backup(self, filename):
        """Create a timestamped backup of a JSON file"""
        path = self._path(filename)
        if not os.path.exists(path):
            return None
        backup_path = f"{path}.{datetime.now().strftime('%Y%m%d_%H%M%S_%f')}.bak"
        try:
            shutil.copy2(path, backup_path)
            logging.info(f"💾 Backup created: {backup_path}")
            return backup_path
        except OSError as e:
            logging.error(f"💥 Backup creation failed: {e}")
            return None

    def load(self, filename, default_data):
        """Load a JSON list file, resetting it to defaults if it is corrupted"""
        path = self._path(filename)
        with self._lock:
            if not os.path.exists(path):
                self.save_file(filename, default_data)
                return default_data
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                if not isinstance(data, list):
                    raise json.JSONDecodeError(f"Invalid {filename} format", filename, 0)
                return data
            except json.JSONDecodeError:
                logging.error(f"🚨 CORRUPTION: '{filename}' corrupted. Auto-recovering...")
                backup_path = self.create_backup(filename)
                if backup_path:
                    logging.info(f"🔒 Corrupted file backed up as: {backup_path}")
                self.save_file(filename, default_data)
                return default_data
            except OSError as e:
                logging.error(f"💥 IO ERROR reading '{filename}': {e}")
                raise StoreError(f"Cannot read {filename}: {e}") from e

    def save_file(self, filename, data):
        """Write a JSON file atomically through a temp file"""
        path = self._path(filename)
        temp_path = f"{path}.tmp"
        with self._lock:
            try:
                payload = json.dumps(data, indent=2, ensure_ascii=False)
                if filename in BACKED_UP_FILES and os.path.exists(path):
                    self.create_backup(filename)
                with open(temp_path, 'w', encoding='utf-8') as f:
                    f.write(payload)
                os.replace(temp_path, path)
                logging.debug(f"💾 File saved successfully: {filename}")
            except (OSError, TypeError, ValueError) as e:
                logging.error(f"💥 Save error for '{filename}': {e}")
                if os.path.exists(temp_path):
                    try:
                        os.remove(temp_path)
                    except OSError:
                        logging.warning(f"⚠️ Could not remove temp file {temp_path}")
                raise StoreError(f"Cannot write {filename}: {e}") from e

    # ------------------------------------------------------------------
    # Establishments
    # ------------------------------------------------------------------

    def list_establishments(self):
        return self.load(ESTABLISHMENTS_FILE, [])

    def get_establishment(self, establishment_id):
        return next((e for e in self.list_establishments() if e.get('id') == establishment_id), None)

    def get_establishment_by_slug(self, slug):
        return next((e for e in self.list_establishments() if e.get('slug') == slug), None)

    def save_establishment(self, establishment):
        with self._lock:
            establishments = self.list_establishments()
            if not establishment.get('id'):
                establishment['id'] = str(uuid.uuid4())
            if not establishment.get('slug'):
                establishment['slug'] = generate_slug(establishment.get('name', ''))
            establishment.setdefault('created_at', utc_now_iso())

            index = next((i for i, e in enumerate(establishments) if e.get('id') == establishment['id']), None)
            if index is None:
                establishments.append(establishment)
            else:
                establishments[index] = establishment
            self.save_file(ESTABLISHMENTS_FILE, establishments)
            return establishment

    def delete_establishment(self, establishment_id):
        """Delete an establishment with its segments and participants"""
        with self._lock:
            establishments = self.list_establishments()
            remaining = [e for e in establishments if e.get('id') != establishment_id]
            if len(remaining) == len(establishments):
                return False
            self.save_file(ESTABLISHMENTS_FILE, remaining)

            segments = self.load(SEGMENTS_FILE, [])
            self.save_file(SEGMENTS_FILE, [s for s in segments if s.get('establishment_id') != establishment_id])

            participants = self.load(PARTICIPANTS_FILE, [])
            self.save_file(PARTICIPANTS_FILE,
                           [p for p in participants if p.get('establishment_id') != establishment_id])
            return True

    # ------------------------------------------------------------------
    # Segments
    # ------------------------------------------------------------------

    def get_segment_records(self, establishment_id):
        segments = self.load(SEGMENTS_FILE, [])
        records = [s for s in segments if s.get('establishment_id') == establishment_id]
        return sorted(records, key=lambda s: s.get('order', 0))

    def save_segments(self, establishment_id, records):
        """Replace every segment of the establishment"""
        with self._lock:
            segments = self.load(SEGMENTS_FILE, [])
            others = [s for s in segments if s.get('establishment_id') != establishment_id]
            for record in records:
                record['establishment_id'] = establishment_id
                record.setdefault('id', str(uuid.uuid4()))
            self.save_file(SEGMENTS_FILE, others + list(records))
            return records

    def load_segments(self, establishment_id):
        return SegmentSet.from_records(self.get_segment_records(establishment_id))

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------

    def list_participants(self, establishment_id):
        participants = self.load(PARTICIPANTS_FILE, [])
        return [ParticipantEntry.from_dict(p) for p in participants
                if p.get('establishment_id') == establishment_id]

    def find_by_email(self, establishment_id, email):
        email = email.strip().lower()
        return next((p for p in self.list_participants(establishment_id)
                     if p.email.lower() == email), None)

    def find_by_phone(self, establishment_id, phone):
        phone = phone.strip()
        return next((p for p in self.list_participants(establishment_id) if p.phone == phone), None)

    def save(self, entry):
        with self._lock:
            participants = self.load(PARTICIPANTS_FILE, [])
            index = next((i for i, p in enumerate(participants) if p.get('id') == entry.id), None)
            if index is None:
                participants.append(entry.to_dict())
            else:
                participants[index] = entry.to_dict()
            self.save_file(PARTICIPANTS_FILE, participants)
            logging.debug(f"💾 Participant saved: {entry.id}")

    # ------------------------------------------------------------------
    # Demo data
    # ------------------------------------------------------------------

    def initialize_demo_data(self):
        """Seed a demo restaurant on first run"""
        if self.list_establishments():
            return False

        establishment = self.save_establishment({
            'id': 'demo-restaurant',
            'name': 'Restaurant Demo',
            'slug': 'demo-restaurant',
            'address': '123 Rue de la Gastronomie, Paris',
            'google_maps_url': 'https://www.google.com/maps',
            'instagram_url': 'https://www.instagram.com',
            'primary_color': '#8b5cf6',
            'secondary_color': '#d946ef',
            'enable_instagram_wheel': True,
        })
        demo_segments = [
            ('Boisson maison offerte', '#8b5cf6', 'prize', 25),
            ('Merci !', '#ec4899', 'no-prize', 20),
            ('Dessert offert', '#f59e0b', 'prize', 20),
            ('Merci !', '#10b981', 'no-prize', 15),
            ('Café offert', '#3b82f6', 'prize', 15),
            ('Merci !', '#ef4444', 'no-prize', 5),
        ]
        self.save_segments(establishment['id'], [
            {'id': str(i + 1), 'title': title, 'color': color, 'type': kind, 'probability': weight, 'order': i}
            for i, (title, color, kind, weight) in enumerate(demo_segments)
        ])
        logging.info(f"🍽️ Demo establishment created: {establishment['name']}")
        return True
