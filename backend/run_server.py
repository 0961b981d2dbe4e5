#!/usr/bin/env python3
"""
Launch script for the Telemetry Pipeline backend.

Usage:
    python run_server.py [data_folder] [--port PORT] [--host HOST]

Examples:
    python run_server.py                    # Use default ./data folder
    python run_server.py /srv/telemetry     # Use custom folder
    python run_server.py --batch-size 1000  # Larger ingestion batches
"""

import argparse
import os
import sys
from pathlib import Path

# Add app to path
sys.path.insert(0, str(Path(__file__).parent))


def main():
    parser = argparse.ArgumentParser(description="Telemetry Pipeline Backend Server")
    parser.add_argument(
        "data_folder",
        nargs="?",
        default="./data",
        help="Folder for the database and stored uploads (default: ./data)"
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=8000,
        help="Port to run server on (default: 8000)"
    )
    parser.add_argument(
        "--host", "-H",
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1, use 0.0.0.0 for all interfaces)"
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Rows per ingestion batch (default: 500)"
    )
    parser.add_argument(
        "--compression",
        choices=["none", "deflate", "gzip"],
        default=None,
        help="Compression for stored uploads (default: deflate)"
    )
    parser.add_argument(
        "--debug", "-d",
        action="store_true",
        help="Run in debug mode"
    )

    args = parser.parse_args()

    data_folder = Path(args.data_folder)

    print("Telemetry Pipeline Backend")
    print("=" * 40)
    print(f"Data folder: {data_folder.absolute()}")
    print(f"Server: http://{args.host}:{args.port}")
    print("=" * 40)

    # Configure settings for create_app
    os.environ["TELEMETRY_DATA_FOLDER"] = str(data_folder)
    if args.batch_size is not None:
        os.environ["TELEMETRY_BATCH_SIZE"] = str(args.batch_size)
    if args.compression is not None:
        os.environ["TELEMETRY_UPLOAD_COMPRESSION"] = args.compression
    if args.debug:
        os.environ["TELEMETRY_LOG_LEVEL"] = "DEBUG"

    print("\nAPI Endpoints:")
    print("  GET  /                                   - Health check")
    print("  GET  /health                             - Detailed health")
    print("  POST /sessions                           - Create session")
    print("  POST /sessions/{id}/files                - Upload telemetry file")
    print("  GET  /files/{id}                         - File processing status")
    print("  GET  /sessions/{id}/metrics              - Available metrics")
    print("  GET  /sessions/{id}/metrics/{key}/samples - Downsampled metric")
    print("  GET  /sessions/{id}/samples              - Several metrics merged")
    print("  GET  /sessions/{id}/columnar             - Columnar buffer")
    print("  POST /sessions/{id}/clear                - Clear telemetry")
    print("\nStarting server...")

    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=args.host,
        port=args.port,
        reload=args.debug,
        log_level="debug" if args.debug else "info",
    )


if __name__ == "__main__":
    main()
