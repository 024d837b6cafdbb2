import json
import os

from dotenv import load_dotenv
from flask import Flask, request, jsonify
from werkzeug.exceptions import HTTPException

load_dotenv()

app = Flask(__name__)
app.config['CALLBACK_DATA_FILE'] = os.getenv('CALLBACK_DATA_FILE', 'data.json')


# --- Routes ---

@app.route('/callback', methods=['POST'])
def mpesa_callback():
    raw = request.get_data()

    # No signature check: Daraja does not sign callbacks
    try:
        data = json.loads(raw)
    except ValueError:
        data = None

    if data is None:
        app.logger.warning("Rejected callback with invalid JSON body")
        return jsonify({'status': 'error', 'message': 'Invalid JSON data'}), 400

    # Each callback replaces the previous one
    with open(app.config['CALLBACK_DATA_FILE'], 'wb') as f:
        f.write(raw)

    app.logger.info("Callback data saved to %s", app.config['CALLBACK_DATA_FILE'])
    return jsonify({'status': 'success', 'message': 'Callback data saved'})


# --- Error Handling ---
@app.errorhandler(Exception)
def handle_exception(e):
    if isinstance(e, HTTPException):
        return e
    app.logger.exception("Unhandled error while processing callback")
    return jsonify({'status': 'error', 'message': 'Internal Server Error'}), 500


if __name__ == '__main__':
    app.run(debug=os.getenv('FLASK_DEBUG', '0') == '1')
