"""
Memorial records (pet_profiles).

- Operators create, edit and delete memorials from the admin dashboard
- Images are uploaded to blob storage first; records keep only their public URLs
- Every write is recorded to the append-only audit trail
"""
