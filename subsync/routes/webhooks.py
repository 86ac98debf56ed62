from flask import Blueprint, current_app, jsonify, request

bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


@bp.route("/<provider>", methods=["POST"])
def receive(provider):
    # get_data() keeps the exact bytes the provider signed
    raw_body = request.get_data(cache=False)
    dispatcher = current_app.extensions["webhook_dispatcher"]
    body, status = dispatcher.dispatch(provider, raw_body, request.headers)
    return jsonify(body), status
