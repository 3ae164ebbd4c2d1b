"""
JSON control surface for the scoring engine.

Read-only observables (round state, scores, team summaries) plus the
pause/resume/reset controls and per-team toggles.
"""

import logging
import sqlite3

from flask import Flask, abort, jsonify, request

from ccdc_scoring import database

log = logging.getLogger("scoring.api")


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        abort(400, description="expected a JSON object")
    return data


def create_app(engine):
    app = Flask(__name__)

    @app.errorhandler(400)
    @app.errorhandler(403)
    @app.errorhandler(404)
    def api_error(err):
        return jsonify({"error": err.description}), err.code

    @app.errorhandler(sqlite3.Error)
    def db_error(err):
        log.error("Database error serving %s: %s", request.path, err)
        return jsonify({"error": "database error"}), 500

    # ---------------------------------------------------------------------------
    # Observables
    # ---------------------------------------------------------------------------

    @app.route("/api/status")
    def api_status():
        status = engine.status()
        snapshot = engine.state.snapshot()
        status["uptimes"] = [
            {"team_id": team_id, "service_name": name, **counts}
            for (team_id, name), counts in sorted(snapshot["uptime"].items())
        ]
        status["round_count"] = database.get_round_count()
        return jsonify(status)

    @app.route("/api/scores")
    def api_scores():
        teams = []
        for team in database.get_teams():
            points, sla_count, sla_points = database.get_team_score(team["id"])
            teams.append({
                "id": team["id"],
                "name": team["name"],
                "active": team["active"],
                "points": points,
                "sla_count": sla_count,
                "sla_points": sla_points,
                "total": points - sla_points,
            })
        return jsonify({
            "teams": teams,
            "services": database.get_service_scores(),
            "by_round": database.get_service_check_sum_by_round(),
        })

    @app.route("/api/teams")
    def api_teams():
        return jsonify(database.get_teams())

    @app.route("/api/teams/<int:team_id>/summary")
    def api_team_summary(team_id):
        return jsonify(database.get_team_summary(team_id))

    @app.route("/api/teams/<int:team_id>/services/<service_name>/checks")
    def api_team_service_checks(team_id, service_name):
        return jsonify(database.get_service_all_checks_by_team(team_id, service_name))

    @app.route("/api/rounds/<int:round_id>")
    def api_round(round_id):
        checks = database.get_round_checks(round_id)
        if not engine.config.misc.show_debug_to_blue_team:
            for check in checks:
                check.pop("debug", None)
        return jsonify(checks)

    # ---------------------------------------------------------------------------
    # Engine controls
    # ---------------------------------------------------------------------------

    @app.route("/api/engine/pause", methods=["POST"])
    def api_pause():
        engine.pause()
        return jsonify({"is_paused": engine.is_paused})

    @app.route("/api/engine/resume", methods=["POST"])
    def api_resume():
        engine.resume()
        return jsonify({"is_paused": engine.is_paused})

    @app.route("/api/engine/reset", methods=["POST"])
    def api_reset():
        engine.reset_scores()
        return jsonify({"current_round": engine.current_round, "is_paused": engine.is_paused})

    # ---------------------------------------------------------------------------
    # Team administration
    # ---------------------------------------------------------------------------

    @app.route("/api/teams/<int:team_id>", methods=["PUT"])
    def api_update_team(team_id):
        data = _json_body()
        identifier = data.get("identifier", "")
        active = data.get("active", False)
        if not isinstance(identifier, str) or not isinstance(active, bool):
            abort(400, description="identifier must be a string and active a boolean")
        if not database.update_team(team_id, identifier, active):
            abort(404, description=f"no team with id {team_id}")
        log.info("Team %d updated: identifier=%r active=%s", team_id, identifier, active)
        return jsonify({"id": team_id, "identifier": identifier, "active": active})

    @app.route("/api/teams/<int:team_id>/services/<service_name>", methods=["PUT"])
    def api_toggle_service(team_id, service_name):
        data = _json_body()
        enabled = data.get("enabled")
        if not isinstance(enabled, bool):
            abort(400, description="enabled must be a boolean")
        if service_name not in engine.config.services_by_name():
            abort(404, description=f"no service named {service_name!r}")
        database.set_team_service_enabled(team_id, service_name, enabled)
        log.info("Team %d service %s enabled=%s", team_id, service_name, enabled)
        return jsonify({"team_id": team_id, "service_name": service_name, "enabled": enabled})

    # ---------------------------------------------------------------------------
    # Credentials
    # ---------------------------------------------------------------------------

    @app.route("/api/credlists")
    def api_credlists():
        return jsonify(engine.credentials.get_credlists())

    @app.route("/api/teams/<int:team_id>/pcr", methods=["GET", "POST"])
    def api_pcr(team_id):
        if request.method == "GET":
            return jsonify(database.get_pcr_history(team_id))
        if not engine.config.misc.easy_pcr:
            abort(403, description="password change requests are disabled")
        data = _json_body()
        try:
            updated = engine.credentials.update_credentials(
                team_id,
                data.get("credlist", ""),
                data.get("usernames", []),
                data.get("passwords", []),
                data.get("changed_by", "api"),
            )
        except ValueError as exc:
            abort(400, description=str(exc))
        return jsonify({"updated": updated})

    return app
