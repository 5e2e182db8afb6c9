#!/usr/bin/env python3
"""
Flask web server launcher for the batch metadata pipeline.
"""
import sys
import os

# Add the parent directory to Python path (where metagen is located)
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, parent_dir)

if __name__ == '__main__':
    from metagen.app import create_app
    from metagen.session_api import session_registry

    host = os.environ.get('HOST', '127.0.0.1')
    port = int(os.environ.get('PORT', '5001'))

    print("=" * 60)
    print("MetaGen Batch Pipeline Server")
    print("=" * 60)
    print(f"Server URL: http://{host}:{port}")
    print(f"Health Check: http://{host}:{port}/api/v1/health")
    print("=" * 60)
    print("Press Ctrl+C to stop the server")
    print()

    try:
        create_app().run(
            host=host,
            port=port,
            debug=False,
            use_reloader=False,
            threaded=True
        )
    except KeyboardInterrupt:
        print("\n\nServer stopped by user")
    except Exception as e:
        print(f"\nServer failed to start: {e}")
        sys.exit(1)
    finally:
        # let in-flight items finish and their history rows land
        session_registry.shutdown()
