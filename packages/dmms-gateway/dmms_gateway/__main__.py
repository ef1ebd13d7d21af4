"""Allow ``python -m dmms_gateway`` — the invocation written into service files."""

from dmms_gateway.cli.main import app

if __name__ == "__main__":
    app(prog_name="dmms-ai")
