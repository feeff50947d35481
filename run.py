# run.py
from lounge.config import Config
from lounge.main import app
from lounge.realtime import socketio

if __name__ == "__main__":
    # Socket.IO needs its own runner instead of app.run
    socketio.run(
        app,
        debug=Config.DEBUG,
        host=Config.FLASK_RUN_HOST,
        port=Config.FLASK_RUN_PORT,
        allow_unsafe_werkzeug=True,
    )
