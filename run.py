import os
from vault import create_app
import logging

config_name = os.environ.get('FLASK_CONFIG') or 'default'
app = create_app(config_name)

def print_endpoints():
    """Print all available endpoints when server starts."""
    print("\n=== Available Endpoints ===")

    # Auth endpoints
    print("\nAuthentication Endpoints (/api):")
    print("  POST /register     - Register new user")
    print("  POST /login        - Log in, returns a bearer token")
    print("  POST /logout       - End the current session")

    # User endpoints
    print("\nUser Endpoints (/api/users):")
    print("  POST /identity              - Register public keys")
    print("  GET  /identity              - Get own public keys")
    print("  GET  /<uuid>/public-key     - Get a user's public keys")
    print("  GET  /search?email=         - Find a user by email")

    # File endpoints
    print("\nFile Endpoints (/api/files):")
    print("  POST   /upload              - Upload new file")
    print("  GET    /                    - List accessible files")
    print("  GET    /<uuid>/download     - Download file and key material")
    print("  DELETE /<uuid>              - Move file to trash")
    print("  POST   /<uuid>/restore      - Restore file from trash")
    print("  DELETE /<uuid>/permanent    - Delete file now")
    print("  GET    /trash               - List trashed files")
    print("  POST   /share               - Share file with user")
    print("  POST   /share-bulk          - Share file with several users")
    print("  POST   /revoke              - Revoke file access")
    print("  GET    /<uuid>/access-list  - Who can open a file")
    print("  GET    /shared-with-me      - Files shared with me")
    print("  GET    /shared-by-me        - Shares I issued")

    # Folder endpoints
    print("\nFolder Endpoints (/api/folders):")
    print("  POST   /                    - Create folder")
    print("  GET    /                    - List folders")
    print("  GET    /<uuid>              - Folder contents and keys")
    print("  DELETE /<uuid>              - Delete folder")
    print("  POST   /<uuid>/files        - Add file to folder")
    print("  DELETE /<uuid>/files/<file> - Remove file from folder")
    print("  POST   /<uuid>/share        - Share folder")
    print("  POST   /<uuid>/revoke       - Revoke folder access")
    print("  GET    /<uuid>/access-list  - Who can open a folder")
    print("  GET    /shared/with-me      - Folders shared with me")
    print("  GET    /shared/by-me        - Folders I have shared")

    # Settings and recovery endpoints
    print("\nSettings Endpoints (/api/settings):")
    print("  GET/PATCH /                         - Trash retention")
    print("  GET/POST  /security-questions       - Manage security questions")
    print("  DELETE    /security-questions/<uuid>")
    print("  POST      /security-questions/verify")
    print("  DELETE    /account                  - Erase account")
    print("\nRecovery Endpoints (/api/recovery):")
    print("  POST /questions       - Security questions for an email")
    print("  POST /verify          - Answer questions, get recovery token")
    print("  POST /reset-password  - Redeem token for a new password")

    print("\n==========================\n")

if __name__ == '__main__':
    # Configure logging
    logging.basicConfig(level=logging.INFO)

    # Print available endpoints
    print_endpoints()

    # Use the SSL context from app config if available
    ssl_context = app.config.get('SSL_CONTEXT')

    # For development testing with SSL
    if ssl_context and config_name == 'development':
         print("\n=== Encrypted Vault Server (Development with SSL) ===")
         app.run(host='0.0.0.0', port=4433, ssl_context=ssl_context, debug=True)
    else:
        # For development testing without SSL or production
        print(f"\n=== Encrypted Vault Server ({config_name.capitalize()}) ===")
        app.run(host='0.0.0.0', port=6969, debug=app.config['DEBUG'])
