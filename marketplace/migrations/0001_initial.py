import django.contrib.auth.models
import django.contrib.auth.validators
import django.core.validators
import django.db.models.deletion
import django.utils.timezone
import marketplace.models
import marketplace.validators
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('auth', '0012_alter_user_first_name_max_length'),
    ]

    operations = [
        migrations.CreateModel(
            name='User',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('password', models.CharField(max_length=128, verbose_name='password')),
                ('last_login', models.DateTimeField(blank=True, null=True, verbose_name='last login')),
                ('is_superuser', models.BooleanField(default=False, help_text='Designates that this user has all permissions without explicitly assigning them.', verbose_name='superuser status')),
                ('username', models.CharField(error_messages={'unique': 'A user with that username already exists.'}, help_text='Required. 150 characters or fewer. Letters, digits and @/./+/-/_ only.', max_length=150, unique=True, validators=[django.contrib.auth.validators.UnicodeUsernameValidator()], verbose_name='username')),
                ('first_name', models.CharField(blank=True, max_length=150, verbose_name='first name')),
                ('last_name', models.CharField(blank=True, max_length=150, verbose_name='last name')),
                ('email', models.EmailField(blank=True, max_length=254, verbose_name='email address')),
                ('is_staff', models.BooleanField(default=False, help_text='Designates whether the user can log into this admin site.', verbose_name='staff status')),
                ('is_active', models.BooleanField(default=True, help_text='Designates whether this user should be treated as active. Unselect this instead of deleting accounts.', verbose_name='active')),
                ('date_joined', models.DateTimeField(default=django.utils.timezone.now, verbose_name='date joined')),
                ('uid', models.CharField(default=marketplace.models.generate_uid, editable=False, help_text='Opaque identifier used to reference this user.', max_length=64, unique=True, verbose_name='uid')),
                ('display_name', models.CharField(blank=True, default='', help_text='Public name shown to other users.', max_length=150, verbose_name='display name')),
                ('photo_url', models.URLField(blank=True, default='', help_text='Optional avatar URL.', max_length=500, verbose_name='photo URL')),
                ('rating', models.FloatField(default=0.0, help_text='Average rating received, stored unrounded.', validators=[django.core.validators.MinValueValidator(0.0, message='Rating cannot be negative.'), django.core.validators.MaxValueValidator(5.0, message='Rating cannot exceed 5.')], verbose_name='rating')),
                ('review_count', models.PositiveIntegerField(default=0, help_text='Number of reviews included in the average.', verbose_name='review count')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='updated at')),
                ('groups', models.ManyToManyField(blank=True, help_text='The groups this user belongs to. A user will get all permissions granted to each of their groups.', related_name='user_set', related_query_name='user', to='auth.group', verbose_name='groups')),
                ('user_permissions', models.ManyToManyField(blank=True, help_text='Specific permissions for this user.', related_name='user_set', related_query_name='user', to='auth.permission', verbose_name='user permissions')),
            ],
            options={
                'verbose_name': 'user',
                'verbose_name_plural': 'users',
                'ordering': ['-created_at'],
            },
            managers=[
                ('objects', django.contrib.auth.models.UserManager()),
            ],
        ),
        migrations.CreateModel(
            name='PackageRequest',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('origin', models.CharField(max_length=200, validators=[marketplace.validators.validate_location], verbose_name='from')),
                ('destination', models.CharField(max_length=200, validators=[marketplace.validators.validate_location], verbose_name='to')),
                ('deadline', models.DateField(help_text='Latest acceptable arrival date', verbose_name='deadline')),
                ('description', models.TextField(blank=True, default='', verbose_name='description')),
                ('size', models.CharField(choices=[('small', 'Small'), ('medium', 'Medium'), ('large', 'Large')], max_length=10, verbose_name='size')),
                ('price', models.DecimalField(decimal_places=2, help_text='Offered price in EUR', max_digits=10, verbose_name='price')),
                ('image_url', models.URLField(blank=True, default='', max_length=500, verbose_name='image URL')),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('in_progress', 'In progress'), ('completed', 'Completed')], default='pending', max_length=20, verbose_name='status')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='updated at')),
                ('owner', models.ForeignKey(help_text='Sender who owns this request', on_delete=django.db.models.deletion.PROTECT, related_name='packages', to=settings.AUTH_USER_MODEL, to_field='uid')),
            ],
            options={
                'verbose_name': 'package request',
                'verbose_name_plural': 'package requests',
                'ordering': ['created_at', 'id'],
                'indexes': [
                    models.Index(fields=['status'], name='package_status_idx'),
                    models.Index(fields=['origin', 'destination'], name='package_route_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='TripOffer',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('origin', models.CharField(max_length=200, validators=[marketplace.validators.validate_location], verbose_name='from')),
                ('destination', models.CharField(max_length=200, validators=[marketplace.validators.validate_location], verbose_name='to')),
                ('date', models.DateField(help_text='Arrival date at the destination', verbose_name='travel date')),
                ('capacity', models.PositiveIntegerField(default=1, help_text='How many packages the traveler can carry', validators=[django.core.validators.MinValueValidator(1, message='Capacity must be at least 1.')], verbose_name='capacity')),
                ('notes', models.TextField(blank=True, default='', verbose_name='notes')),
                ('status', models.CharField(choices=[('active', 'Active'), ('in_progress', 'In progress'), ('completed', 'Completed')], default='active', max_length=20, verbose_name='status')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='updated at')),
                ('owner', models.ForeignKey(help_text='Traveler who owns this trip', on_delete=django.db.models.deletion.PROTECT, related_name='trips', to=settings.AUTH_USER_MODEL, to_field='uid')),
            ],
            options={
                'verbose_name': 'trip offer',
                'verbose_name_plural': 'trip offers',
                'ordering': ['created_at', 'id'],
                'indexes': [
                    models.Index(fields=['status'], name='trip_status_idx'),
                    models.Index(fields=['origin', 'destination'], name='trip_route_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Match',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('accepted', 'Accepted'), ('completed', 'Completed')], default='pending', max_length=20, verbose_name='status')),
                ('claim_key', models.CharField(editable=False, max_length=64, unique=True, verbose_name='claim key')),
                ('slot_key', models.CharField(blank=True, editable=False, max_length=96, null=True, unique=True, verbose_name='slot key')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('accepted_at', models.DateTimeField(blank=True, null=True, verbose_name='accepted at')),
                ('completed_at', models.DateTimeField(blank=True, null=True, verbose_name='completed at')),
                ('package', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='matches', to='marketplace.packagerequest')),
                ('trip', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='matches', to='marketplace.tripoffer')),
                ('traveler', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='matches_as_traveler', to=settings.AUTH_USER_MODEL, to_field='uid')),
                ('sender', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='matches_as_sender', to=settings.AUTH_USER_MODEL, to_field='uid')),
            ],
            options={
                'verbose_name': 'match',
                'verbose_name_plural': 'matches',
                'ordering': ['created_at', 'id'],
                'indexes': [
                    models.Index(fields=['status'], name='match_status_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Conversation',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('last_message', models.TextField(blank=True, default='', verbose_name='last message')),
                ('last_message_at', models.DateTimeField(blank=True, null=True, verbose_name='last message at')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('participant_low', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='+', to=settings.AUTH_USER_MODEL, to_field='uid')),
                ('participant_high', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='+', to=settings.AUTH_USER_MODEL, to_field='uid')),
                ('match', models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='conversation', to='marketplace.match')),
                ('package', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='conversations', to='marketplace.packagerequest')),
                ('trip', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='conversations', to='marketplace.tripoffer')),
            ],
            options={
                'verbose_name': 'conversation',
                'verbose_name_plural': 'conversations',
                'ordering': ['-last_message_at', '-created_at'],
            },
        ),
        migrations.CreateModel(
            name='Message',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('content', models.TextField(verbose_name='content')),
                ('kind', models.CharField(choices=[('text', 'Text'), ('location', 'Location'), ('quickAction', 'Quick action')], default='text', max_length=20, verbose_name='kind')),
                ('action', models.CharField(blank=True, choices=[('meeting_point', 'Meeting point'), ('confirm_price', 'Confirm price'), ('delivery_confirmed', 'Delivery confirmed')], default='', max_length=30, verbose_name='quick action')),
                ('timestamp', models.DateTimeField(default=django.utils.timezone.now, verbose_name='timestamp')),
                ('read', models.BooleanField(default=False, verbose_name='read')),
                ('conversation', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='messages', to='marketplace.conversation')),
                ('sender', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='messages_sent', to=settings.AUTH_USER_MODEL, to_field='uid')),
            ],
            options={
                'verbose_name': 'message',
                'verbose_name_plural': 'messages',
                'ordering': ['timestamp', 'id'],
                'indexes': [
                    models.Index(fields=['conversation', 'timestamp'], name='message_timeline_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Review',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('rating', models.PositiveSmallIntegerField(help_text='Rating from 1 to 5 stars', validators=[django.core.validators.MinValueValidator(1, message='Rating must be at least 1.'), django.core.validators.MaxValueValidator(5, message='Rating must be at most 5.')], verbose_name='rating')),
                ('comment', models.TextField(blank=True, default='', verbose_name='comment')),
                ('dedupe_key', models.CharField(editable=False, max_length=255, unique=True, verbose_name='dedupe key')),
                ('applied', models.BooleanField(default=False, help_text='Whether this rating is included in the subject aggregate', verbose_name='applied')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('author', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='reviews_given', to=settings.AUTH_USER_MODEL, to_field='uid')),
                ('subject', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='reviews_received', to=settings.AUTH_USER_MODEL, to_field='uid')),
                ('package', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='reviews', to='marketplace.packagerequest')),
                ('trip', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='reviews', to='marketplace.tripoffer')),
            ],
            options={
                'verbose_name': 'review',
                'verbose_name_plural': 'reviews',
                'ordering': ['-created_at', '-id'],
                'indexes': [
                    models.Index(fields=['subject', 'applied'], name='review_subject_applied_idx'),
                ],
            },
        ),
    ]
