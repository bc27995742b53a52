from app.petmemorial import create_app

app = create_app()
