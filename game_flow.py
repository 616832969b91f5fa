import logging
import threading
from enum import Enum

from stores import ParticipantEntry, StoreError


class InvalidTransition(Exception):
    """Raised when a step is triggered from a state that does not allow it"""


class GameState(str, Enum):
    AWAITING_CONTACT_INFO = 'awaiting_contact_info'
    AWAITING_REVIEW_CONFIRMATION = 'awaiting_review_confirmation'
    SPINNING_WHEEL_1 = 'spinning_wheel_1'
    SHOWING_RESULT_1 = 'showing_result_1'
    AWAITING_INSTAGRAM_FOLLOW = 'awaiting_instagram_follow'
    SPINNING_WHEEL_2 = 'spinning_wheel_2'
    SHOWING_RESULT_2 = 'showing_result_2'
    TERMINAL = 'terminal'
    ALREADY_PARTICIPATED = 'already_participated'


TERMINAL_STATES = {GameState.TERMINAL, GameState.ALREADY_PARTICIPATED}


class BonusPolicy(str, Enum):
    WINNERS_ONLY = 'winners_only'
    EVERYONE = 'everyone'


class GameFlow:
    """
    One participant's play-through: contact info, review, wheel 1,
    then optionally the Instagram bonus wheel.

    Duplicate participation (same email or phone at the same establishment)
    is only checked when contact info is submitted.
    """

    def __init__(self, establishment, participants, bonus_policy=BonusPolicy.WINNERS_ONLY):
        self.establishment = establishment
        self.participants = participants
        self.bonus_policy = BonusPolicy(bonus_policy)

        self.state = GameState.AWAITING_CONTACT_INFO
        self.entry = None
        self.outcome1 = None
        self.outcome2 = None
        self.is_winner_1 = False
        self.is_winner_2 = False
        self.last_store_error = None
        self._lock = threading.Lock()

    @property
    def establishment_id(self):
        return self.establishment['id']

    @property
    def bonus_wheel_enabled(self):
        return bool(self.establishment.get('enable_instagram_wheel'))

    @property
    def is_terminal(self):
        return self.state in TERMINAL_STATES

    @property
    def offers_bonus_wheel(self):
        if not self.bonus_wheel_enabled or self.outcome1 is None:
            return False
        if self.bonus_policy == BonusPolicy.EVERYONE:
            return True
        return self.is_winner_1

    def _expect(self, *states):
        if self.state not in states:
            expected = ', '.join(s.value for s in states)
            raise InvalidTransition(f"Cannot do this from state '{self.state.value}' (expected {expected})")

    def _move(self, state):
        logging.debug(f"🧭 [{self.establishment_id}] {self.state.value} -> {state.value}")
        self.state = state

    def submit_contact_info(self, email, phone):
        with self._lock:
            self._expect(GameState.AWAITING_CONTACT_INFO)
            email, phone = email.strip(), phone.strip()

            if self._has_participated(email, phone):
                logging.info(f"🔁 [{self.establishment_id}] Already participated: {email}")
                self._move(GameState.ALREADY_PARTICIPATED)
                return self.state

            self.entry = ParticipantEntry(establishment_id=self.establishment_id, email=email, phone=phone)
            self._move(GameState.AWAITING_REVIEW_CONFIRMATION)
            return self.state

    def _has_participated(self, email, phone):
        # A failing lookup must not lock a new participant out
        try:
            if self.participants.find_by_email(self.establishment_id, email):
                return True
            return self.participants.find_by_phone(self.establishment_id, phone) is not None
        except StoreError as e:
            logging.warning(f"⚠️ [{self.establishment_id}] Duplicate lookup failed, allowing entry: {e}")
            return False

    def confirm_review(self):
        with self._lock:
            self._expect(GameState.AWAITING_REVIEW_CONFIRMATION)
            self._move(GameState.SPINNING_WHEEL_1)
            return self.state

    def complete_spin_1(self, outcome):
        """Record the wheel 1 outcome. Returns False if it could not be persisted."""
        with self._lock:
            self._expect(GameState.SPINNING_WHEEL_1)
            self.outcome1 = outcome
            self.is_winner_1 = outcome.is_winner
            self.entry.wheel1_spun = True
            self.entry.prize1 = outcome.segment.title
            self._move(GameState.SHOWING_RESULT_1)
            return self._persist()

    def proceed_from_result_1(self):
        with self._lock:
            self._expect(GameState.SHOWING_RESULT_1)
            if self.offers_bonus_wheel:
                self._move(GameState.AWAITING_INSTAGRAM_FOLLOW)
            else:
                self._move(GameState.TERMINAL)
            return self.state

    def confirm_instagram_follow(self):
        with self._lock:
            self._expect(GameState.AWAITING_INSTAGRAM_FOLLOW)
            self._move(GameState.SPINNING_WHEEL_2)
            return self.state

    def complete_spin_2(self, outcome):
        """Record the bonus wheel outcome. Returns False if it could not be persisted."""
        with self._lock:
            self._expect(GameState.SPINNING_WHEEL_2)
            self.outcome2 = outcome
            self.is_winner_2 = outcome.is_winner
            self.entry.wheel2_spun = True
            self.entry.prize2 = outcome.segment.title
            self._move(GameState.SHOWING_RESULT_2)
            return self._persist()

    def finish(self):
        with self._lock:
            if self.state == GameState.SHOWING_RESULT_1 and self.offers_bonus_wheel:
                raise InvalidTransition("A bonus wheel is available; continue instead of finishing")
            self._expect(GameState.SHOWING_RESULT_1, GameState.SHOWING_RESULT_2)
            self._move(GameState.TERMINAL)
            return self.state

    def _persist(self):
        # The outcome is final whether or not the write succeeds
        try:
            self.participants.save(self.entry)
            self.last_store_error = None
            return True
        except StoreError as e:
            logging.error(f"💥 [{self.establishment_id}] Could not save participant {self.entry.id}: {e}")
            self.last_store_error = e
            return False

    def to_dict(self):
        return {
            'state': self.state.value,
            'establishment_id': self.establishment_id,
            'participant_id': self.entry.id if self.entry else None,
            'prize1': self.entry.prize1 if self.entry else None,
            'prize2': self.entry.prize2 if self.entry else None,
            'is_winner_1': self.is_winner_1,
            'is_winner_2': self.is_winner_2,
            'offers_bonus_wheel': self.offers_bonus_wheel,
            'saved': self.last_store_error is None,
        }
