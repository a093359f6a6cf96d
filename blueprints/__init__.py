"""
Blueprint registration for the bootcamp misconception service.
"""

from __future__ import annotations


def register_blueprints(app):
    from blueprints.core import bp as core_bp
    from blueprints.misconceptions import bp as misconceptions_bp
    from blueprints.practice import bp as practice_bp
    from blueprints.questions import bp as questions_bp

    app.register_blueprint(core_bp)
    app.register_blueprint(misconceptions_bp)
    app.register_blueprint(practice_bp)
    app.register_blueprint(questions_bp)
