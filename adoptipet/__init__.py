"""AdoptiPet backend: pagination and recommendation ranking over pet listings."""
