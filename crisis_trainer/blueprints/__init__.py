"""
Crisis Trainer
Blueprint registry.
"""

from crisis_trainer.blueprints.accounts_bp import accounts_bp
from crisis_trainer.blueprints.assignment_bp import assignment_bp
from crisis_trainer.blueprints.evaluation_bp import evaluation_bp
from crisis_trainer.blueprints.external_bp import external_bp
from crisis_trainer.blueprints.flag_bp import flag_bp
from crisis_trainer.blueprints.health_bp import health_bp
from crisis_trainer.blueprints.internal_bp import internal_bp
from crisis_trainer.blueprints.recording_bp import recording_bp
from crisis_trainer.blueprints.scenario_bp import scenario_bp
from crisis_trainer.blueprints.session_bp import session_bp
from crisis_trainer.blueprints.users_bp import users_bp
from crisis_trainer.blueprints.voice_bp import voice_bp

ALL_BLUEPRINTS = (
    health_bp,
    users_bp,
    accounts_bp,
    scenario_bp,
    assignment_bp,
    session_bp,
    evaluation_bp,
    flag_bp,
    recording_bp,
    voice_bp,
    internal_bp,
    external_bp,
)
