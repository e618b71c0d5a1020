"""
Main application entry point for ScriptGuard.
"""
import os

from scriptguard import create_app

# Create Flask application
app = create_app(os.getenv('FLASK_ENV', 'production'))

if __name__ == '__main__':
    app.run(
        host='0.0.0.0',
        port=int(os.getenv('PORT', '8080')),
        debug=os.getenv('FLASK_ENV') == 'development'
    )
