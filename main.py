"""Main entry point for the Nelo WhatsApp assistant."""

import sys
import os

# For Vercel deployment, just export the FastAPI app
if os.getenv("VERCEL"):
    from api_server import app
    __all__ = ["app"]
else:
    import argparse
    from nelo.utils.config import settings
    from nelo.utils.logger import get_logger
    logger = get_logger("main")


def run_api(disable_reload=False):
    """Run the API server."""
    try:
        import uvicorn

        logger.info(f"Starting {settings.app_name} API server")
        print(f"🚀 Starting {settings.app_name} API Server")
        print(f"📍 Running on: http://{settings.api_host}:{settings.api_port}")
        print(f"📲 WhatsApp webhook: http://{settings.api_host}:{settings.api_port}/whatsapp/webhook")
        print(f"🔄 Debug mode: {settings.debug}")
        print()

        uvicorn.run(
            "api_server:app",  # Use import string for proper reload support
            host=settings.api_host,
            port=settings.api_port,
            reload=settings.api_reload and not disable_reload,
            log_level=settings.log_level.lower()
        )

    except ImportError as e:
        logger.error(f"Failed to import API modules: {e}")
        print("Error: Failed to start API server. Make sure all dependencies are installed.")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Error running API server: {e}")
        print(f"Error: {e}")
        sys.exit(1)


def check_environment():
    """Report which capabilities are configured. Returns False when a required one is missing."""
    checks = {
        "Twilio WhatsApp": bool(settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_whatsapp_number),
        "Webhook verify token": bool(settings.whatsapp_verify_token),
        "Custody gateway": bool(settings.custody_api_url),
        "KYC verifier": bool(settings.kyc_api_url),
        "Payment verifier": bool(settings.payment_api_url),
        "Name resolver": bool(settings.resolver_api_url),
        "Admin API key": bool(settings.admin_api_key),
    }
    for name, ok in checks.items():
        print(f"{'✅' if ok else '⚠️ '} {name}: {'configured' if ok else 'not configured'}")
    print()

    if not checks["Custody gateway"]:
        print("❌ CUSTODY_API_URL is required. Please check your .env file.")
        return False
    return True


def main():
    """Main entry point with argument parsing."""
    parser = argparse.ArgumentParser(
        description=f"{settings.app_name} - WhatsApp financial assistant",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py              # Run API server (default)
  python main.py --api        # Run API server explicitly
  python main.py --check      # Check environment configuration
        """
    )

    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--api",
        action="store_true",
        help="Run the FastAPI server (default)"
    )
    group.add_argument(
        "--check",
        action="store_true",
        help="Check environment configuration"
    )
    parser.add_argument(
        "--no-reload",
        action="store_true",
        help="Disable hot reload even if API_RELOAD is set"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"{settings.app_name} v{settings.app_version}"
    )

    args = parser.parse_args()

    print("=" * 60)
    print(f"  {settings.app_name} v{settings.app_version}")
    print("  WhatsApp Financial Assistant")
    print("=" * 60)
    print()

    ok = check_environment()
    if args.check:
        if ok:
            print("✅ Environment configuration check passed!")
            print(f"📍 API will run on: http://{settings.api_host}:{settings.api_port}")
        sys.exit(0 if ok else 1)

    if not ok:
        sys.exit(1)
    run_api(disable_reload=args.no_reload)


if __name__ == "__main__":
    if not os.getenv("VERCEL"):
        try:
            main()
        except KeyboardInterrupt:
            print("\n👋 Application terminated by user")
            sys.exit(0)
        except Exception as e:
            logger.error(f"Fatal error: {e}")
            print(f"\n💥 Fatal error: {e}")
            sys.exit(1)
