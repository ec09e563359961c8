# =================================================================
#   Online Teaching ERP - WSGI Entry Point
#   Used by production WSGI servers (Waitress, Gunicorn, etc.)
#
#   Usage:
#     Windows:  waitress-serve --host=0.0.0.0 --port=5000 wsgi:app
#     Linux:    gunicorn -w 4 -b 0.0.0.0:5000 wsgi:app
# =================================================================

from server import create_app

app = create_app()

if __name__ == '__main__':
    app.run(host=app.config['HOST'], port=app.config['PORT'])
