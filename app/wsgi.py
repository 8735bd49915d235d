from app.kyudo import create_app

app = create_app()
