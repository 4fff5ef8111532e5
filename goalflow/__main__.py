from goalflow.cli.main import app

app()
